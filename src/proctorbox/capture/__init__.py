"""Automated capture pipeline."""

from .browser import BrowserPool
from .detectors import AriaLabelDetector, Detector, DetectorChain, TextDetector, XPathDetector
from .driver import CaptureDriver, DriveReport
from .service import CaptureService, summarize

__all__ = [
    "AriaLabelDetector",
    "BrowserPool",
    "CaptureDriver",
    "CaptureService",
    "Detector",
    "DetectorChain",
    "DriveReport",
    "TextDetector",
    "XPathDetector",
    "summarize",
]
