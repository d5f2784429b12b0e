"""Models package."""

from .job import Job
from .media import MediaFile, Metadata
from .feed import FeedItem
