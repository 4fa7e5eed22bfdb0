import locale
import mimetypes
from typing import Optional

DEFAULT_TYPE = "application/octet-stream"

# mimetypes reports compression as an encoding; a download is the compressed blob
_ENCODING_TYPES = {
    "gzip": "application/gzip",
    "bzip2": "application/x-bzip2",
    "xz": "application/x-xz",
    "compress": "application/x-compress",
    "br": "application/x-brotli",
}


def detect_charset() -> Optional[str]:
    return locale.getpreferredencoding(False) or None


class ContentType:
    def __init__(self, charset: Optional[str] = None) -> None:
        self.charset = charset

    def __call__(self, filename: str) -> str:
        ctype, encoding = mimetypes.guess_type(filename, strict=False)
        if encoding:
            return _ENCODING_TYPES.get(encoding, DEFAULT_TYPE)
        if ctype is None:
            return DEFAULT_TYPE
        if ctype.startswith("text/") and self.charset:
            return f"{ctype}; charset={self.charset}"
        return ctype
