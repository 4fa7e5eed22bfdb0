from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple


@dataclass(frozen=True)
class Request:
    method: str
    target: str
    path: str
    version: str
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResponseSpec:
    status: int
    reason: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None
    body_path: Optional[str] = None
    body_offset: int = 0
    body_size: int = 0


@dataclass(frozen=True)
class CallbackContext:
    """State shared by every request handler, frozen before the loop starts."""

    prefix: Optional[str]
    files: Tuple[str, ...]
    content_type: Callable[[str], str]

    @property
    def prefix_len(self) -> int:
        return len(self.prefix) if self.prefix else 0
