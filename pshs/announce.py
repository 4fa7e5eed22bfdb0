import sys
from typing import Callable, Optional, Sequence
from urllib.parse import quote

from .qr import print_qrcode


def service_url(address: str, port: int, prefix: Optional[str], files: Sequence[str], ssl: bool = False) -> str:
    scheme = "https" if ssl else "http"
    if ":" in address:
        address = f"[{address}]"

    url = f"{scheme}://{address}:{port}/"
    if prefix:
        url += f"{prefix}/"
    # a single shared file gets a direct link
    if len(files) == 1:
        url += quote(files[0], safe="")
    return url


def announce(url: str, render: Callable[[str], None] = print_qrcode) -> None:
    print(f"Server reachable at: {url}", file=sys.stderr)
    render(url)
