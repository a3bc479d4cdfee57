from app.domain.models.publish_job import PublishJob, PublishJobState
from app.domain.models.social_connection import Platform, SocialConnection

__all__ = [
    "Platform",
    "PublishJob",
    "PublishJobState",
    "SocialConnection",
]
