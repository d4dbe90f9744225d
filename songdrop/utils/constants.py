import os

# Transient failures allowed before a job is parked as FAILED
RETRY_LIMIT = 3

# Signed download URLs handed to clients
DOWNLOAD_URL_TTL_HOURS = 48
# A stored URL this close to expiry is re-signed instead of handed out
DOWNLOAD_URL_REFRESH_MARGIN_MINUTES = 5

# Queue loop pacing (seconds)
POLL_DELAY_SECONDS = 1.0
ERROR_COOLDOWN_SECONDS = 5.0

DOWNLOADS_DIR = os.getenv("DOWNLOADS_DIR", os.path.join(os.getcwd(), "downloads"))

AUDIO_FORMAT = "mp3"

NOTIFICATION_TYPE_DOWNLOAD_COMPLETED = "DOWNLOAD_COMPLETED"
