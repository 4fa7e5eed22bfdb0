import html
import os
import stat
from email.utils import formatdate
from typing import Optional, Tuple
from urllib.parse import quote

from .models import CallbackContext, Request, ResponseSpec


class RangeNotSatisfiable(Exception):
    pass


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a single-range "bytes=" header into an inclusive (start, end) pair.

    Returns None when the whole file should be sent: no header, a unit other
    than bytes, a multi-range request or a malformed spec. Raises
    RangeNotSatisfiable when the range lies outside the file.
    """
    if not header:
        return None
    unit, _, spec = header.partition("=")
    if unit.strip().lower() != "bytes" or "," in spec:
        return None

    first, sep, last = spec.strip().partition("-")
    if not sep:
        return None
    try:
        if not first:
            suffix = int(last)
            if suffix <= 0 or size == 0:
                raise RangeNotSatisfiable(spec)
            return max(size - suffix, 0), size - 1
        start = int(first)
        end = int(last) if last else None
    except ValueError:
        return None

    if end is None:
        end = size - 1
    elif start > end:
        return None
    if start >= size:
        raise RangeNotSatisfiable(spec)
    return start, min(end, size - 1)


def _plain(status: int, reason: str, headers: Optional[dict] = None) -> ResponseSpec:
    h = {"Content-Type": "text/plain; charset=utf-8"}
    if headers:
        h.update(headers)
    return ResponseSpec(status, reason, headers=h, body_size=0)


class FileHandler:
    def __init__(self, ctx: CallbackContext) -> None:
        self.ctx = ctx

    def handle(self, req: Request) -> ResponseSpec:
        name = self._resolve(req.path)
        if name is None:
            return _plain(404, "Not Found")

        try:
            st = os.stat(name)
        except OSError:
            return _plain(404, "Not Found")

        if not stat.S_ISREG(st.st_mode) or not os.access(name, os.R_OK):
            return _plain(403, "Forbidden")

        headers = {
            "Content-Type": self.ctx.content_type(name),
            "Last-Modified": formatdate(st.st_mtime, usegmt=True),
            "Accept-Ranges": "bytes",
        }

        try:
            byte_range = parse_range(req.headers.get("range"), st.st_size)
        except RangeNotSatisfiable:
            return _plain(416, "Range Not Satisfiable", {"Content-Range": f"bytes */{st.st_size}"})

        if byte_range is None:
            return ResponseSpec(200, "OK", headers=headers, body_path=name, body_size=st.st_size)

        start, end = byte_range
        headers["Content-Range"] = f"bytes {start}-{end}/{st.st_size}"
        return ResponseSpec(
            206,
            "Partial Content",
            headers=headers,
            body_path=name,
            body_offset=start,
            body_size=end - start + 1,
        )

    def _resolve(self, url_path: str) -> Optional[str]:
        """Map /[prefix/]name onto one of the shared files, or None."""
        rel = url_path[1:] if url_path.startswith("/") else url_path
        if self.ctx.prefix:
            head, sep, rel = rel.partition("/")
            if head != self.ctx.prefix or not sep:
                return None
        if rel in self.ctx.files:
            return rel
        return None


class IndexHandler:
    def __init__(self, ctx: CallbackContext) -> None:
        self.ctx = ctx

    def handle(self, req: Request) -> ResponseSpec:
        body = self.render().encode("utf-8")
        return ResponseSpec(
            200,
            "OK",
            headers={"Content-Type": "text/html; charset=utf-8"},
            body=body,
            body_size=len(body),
        )

    def render(self) -> str:
        base = "/" + (self.ctx.prefix + "/" if self.ctx.prefix else "")
        items = "".join(
            f'<li><a href="{html.escape(base + quote(name))}">{html.escape(name)}</a></li>\n'
            for name in self.ctx.files
        )
        return (
            "<!DOCTYPE html>\n"
            "<html><head><meta charset=\"utf-8\"><title>Shared files</title></head>\n"
            f"<body><h1>Shared files</h1>\n<ul>\n{items}</ul></body></html>\n"
        )
