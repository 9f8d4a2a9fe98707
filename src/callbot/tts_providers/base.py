from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


class TTSProvider(ABC):
    @abstractmethod
    async def synthesize(self, text: str, *, voice_name: Optional[str] = None) -> bytes:
        raise NotImplementedError

    def cancel(self) -> None:
        return None

    async def close(self) -> None:
        return None
