from .capture_manager import CaptureManager, StreamEvent
from .config import LiveVisionSettings
from .gallery import IdentityGallery
from .matcher import IdentityMatcher
from .orchestrator import DetectionOrchestrator, PipelineKind
from .runtime import LiveVisionRuntime

__version__ = "0.1.0"

__all__ = [
    "CaptureManager",
    "DetectionOrchestrator",
    "IdentityGallery",
    "IdentityMatcher",
    "LiveVisionRuntime",
    "LiveVisionSettings",
    "PipelineKind",
    "StreamEvent",
]
