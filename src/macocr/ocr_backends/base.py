# macocr/ocr_backends/base.py
from typing import List
from abc import ABC, abstractmethod

from ..models import RawObservation

class BaseOCREngine(ABC):
    @abstractmethod
    def recognize(self, data: bytes, width: int, height: int) -> List[RawObservation]:
        """
        Run text recognition on one encoded image.
        Return observations in the engine's own order, corners normalized
        with a bottom-left origin.
        """
        pass
