from typing import Callable, Dict, Optional

from .handler import FileHandler, IndexHandler
from .models import CallbackContext, Request, ResponseSpec

Route = Callable[[Request], ResponseSpec]


class RouteTable:
    """Exact-match routes with a generic fallback."""

    def __init__(self, generic: Route) -> None:
        self.generic = generic
        self._exact: Dict[str, Route] = {}

    def add(self, path: str, handler: Route) -> None:
        self._exact[path] = handler

    def match(self, path: str) -> Route:
        return self._exact.get(path, self.generic)

    def paths(self):
        return list(self._exact)


def index_path(prefix: Optional[str]) -> str:
    if not prefix:
        return "/"
    return f"/{prefix}/"


def build_routes(ctx: CallbackContext) -> RouteTable:
    table = RouteTable(FileHandler(ctx).handle)
    table.add(index_path(ctx.prefix), IndexHandler(ctx).handle)
    return table
