from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Callable, Generic, List, Optional, Protocol, TypeVar

import numpy as np

from .exceptions import ModelUnavailable
from .logger import setup_logger
from .types import FaceObservation, ObjectDetection


class ObjectDetector(Protocol):
    def detect(self, image: np.ndarray) -> List[ObjectDetection]:
        ...


class FaceEmbedder(Protocol):
    def detect_faces(self, image: np.ndarray) -> List[FaceObservation]:
        ...


M = TypeVar("M")


class InferencePort(Generic[M]):
    """Holds one inference model and a readiness future resolved when it loads.

    Loading runs on a background thread so a slow model download never blocks
    camera startup. A loader failure resolves the future with ModelUnavailable.
    """

    def __init__(self, name: str, loader: Callable[[], M]) -> None:
        self.name = name
        self._loader = loader
        self._load_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.ready: Future = Future()
        self.logger = setup_logger(f"{self.__class__.__name__}.{name}")

    @classmethod
    def from_model(cls, name: str, model: M) -> "InferencePort[M]":
        port = cls(name, lambda: model)
        port.load(background=False)
        return port

    def load(self, background: bool = True) -> Future:
        with self._load_lock:
            if self._thread is not None or self.ready.done():
                return self.ready
            if background:
                self._thread = threading.Thread(target=self._load, name=f"{self.name}-model-loader", daemon=True)
                self._thread.start()
                return self.ready
        self._load()
        return self.ready

    @property
    def is_loading(self) -> bool:
        return self.ready.running()

    @property
    def is_ready(self) -> bool:
        return self.ready.done() and not self.ready.cancelled() and self.ready.exception() is None

    @property
    def error(self) -> Optional[str]:
        if not self.ready.done() or self.ready.cancelled():
            return None
        exc = self.ready.exception()
        return str(exc) if exc is not None else None

    @property
    def status(self) -> str:
        if self.is_ready:
            return "ready"
        if self.error is not None:
            return "error"
        if self.is_loading:
            return "loading"
        return "pending"

    def get(self) -> M:
        if not self.ready.done():
            raise ModelUnavailable(f"The {self.name} model is not ready yet. Please wait for it to load.")
        exc = self.ready.exception()
        if exc is not None:
            raise ModelUnavailable(str(exc)) from exc
        return self.ready.result()

    def _load(self) -> None:
        if not self.ready.set_running_or_notify_cancel():
            return
        self.logger.info("Loading %s model", self.name)
        try:
            model = self._loader()
        except Exception as exc:
            self.logger.error("Failed to load %s model: %s", self.name, exc)
            self.ready.set_exception(ModelUnavailable(f"Failed to load {self.name} model: {exc}"))
            return
        self.logger.info("%s model loaded", self.name.capitalize())
        self.ready.set_result(model)
