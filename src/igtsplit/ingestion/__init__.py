"""Frame sources."""
from igtsplit.ingestion.frames import VideoFrameSource

__all__ = ["VideoFrameSource"]
