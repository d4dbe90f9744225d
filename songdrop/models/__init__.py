from songdrop.models.job import DownloadJob
from .user import User
