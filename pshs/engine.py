import asyncio
import sys
from datetime import datetime, timezone
from typing import Dict
from urllib.parse import unquote

from .config import PROG, VERSION
from .models import Request, ResponseSpec
from .routes import RouteTable

ALLOWED_METHODS = ("GET", "HEAD")


class ResponseAborted(Exception):
    """Sending the body failed after the status line was written."""


class HTTPEngine:
    def __init__(self, config, routes: RouteTable, server_name=None) -> None:
        self.config = config
        self.routes = routes
        if server_name is None:
            server_name = f"{PROG}/{VERSION}"
        self.server_name = server_name

        # in-flight connections, so shutdown can abort them
        self._connections: Dict[asyncio.Task, asyncio.StreamWriter] = {}

    async def handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        self._connections[task] = writer
        try:
            if self.config.debug:
                print(f"Handling connection from {writer.get_extra_info('peername')}", file=sys.stderr)
            await self.process(reader, writer)
        except (OSError, asyncio.IncompleteReadError):
            return
        finally:
            self._connections.pop(task, None)
            writer.close()

    def abort(self) -> list:
        """Drop every in-flight connection; returns the tasks to wait on."""
        tasks = list(self._connections)
        for task, writer in self._connections.items():
            writer.transport.abort()
            task.cancel()
        return tasks

    @property
    def active_connections(self) -> int:
        return len(self._connections)

    async def process(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        method = "GET"
        try:
            raw = await self._read_headers(reader)
            if raw is None:
                return

            req = self._parse_request(raw)
            method = req.method
            if req.method.upper() not in ALLOWED_METHODS:
                return await self._send(writer, req.method, self._simple_response(
                    405, "Method Not Allowed", {"Allow": ", ".join(ALLOWED_METHODS)}))

            resp = self.routes.match(req.path)(req)
            await self._send(writer, req.method, resp)

        except ConnectionError:
            raise
        except ResponseAborted as e:
            if self.config.debug:
                print(f"Response aborted: {e.__cause__!r}", file=sys.stderr)
            writer.transport.abort()
        except ValueError:
            await self._send(writer, method, self._simple_response(400, "Bad Request"))
        except Exception as e:
            if self.config.debug:
                print(f"Unhandled exception in request handler: {e!r}", file=sys.stderr)
            await self._send(writer, method, self._simple_response(500, "Internal Server Error"))

    async def _read_headers(self, reader: asyncio.StreamReader) -> bytes | None:
        try:
            return await reader.readuntil(b"\r\n\r\n")
        except asyncio.IncompleteReadError:
            return None
        except asyncio.LimitOverrunError:
            raise ValueError("request header too large")

    def _parse_request(self, raw: bytes) -> Request:
        head, _, _ = raw.partition(b"\r\n\r\n")
        lines = head.split(b"\r\n")
        if not lines:
            raise ValueError("empty request")

        request_line = lines[0].decode("iso-8859-1")
        parts = request_line.split()
        if len(parts) != 3:
            raise ValueError("bad request line")

        method, target, version = parts
        if not version.startswith("HTTP/"):
            raise ValueError("bad http version")

        headers = {}
        for bline in lines[1:]:
            if not bline:
                continue
            line = bline.decode("iso-8859-1", errors="ignore")
            if ":" not in line:
                continue
            k, v = line.split(":", 1)
            headers[k.strip().lower()] = v.strip()

        path = target.split("?", 1)[0]
        path = unquote(path)

        return Request(method=method, target=target, path=path, version=version, headers=headers)

    async def _send(self, writer: asyncio.StreamWriter, method: str, resp: ResponseSpec) -> None:
        method = method.upper()
        head_only = (method == "HEAD")

        headers = dict(resp.headers)
        headers.setdefault("Date", self._http_date())
        headers.setdefault("Server", self.server_name)
        headers.setdefault("Connection", "close")
        headers.setdefault("Content-Length", str(resp.body_size))

        status_line = f"HTTP/1.1 {resp.status} {resp.reason}\r\n"
        header_block = status_line + "".join(f"{k}: {v}\r\n" for k, v in headers.items()) + "\r\n"
        writer.write(header_block.encode("iso-8859-1"))
        await writer.drain()

        if head_only:
            return

        try:
            if resp.body is not None:
                writer.write(resp.body)
                await writer.drain()
            elif resp.status in (200, 206) and resp.body_path:
                await self._send_file(writer, resp.body_path, resp.body_offset, resp.body_size)
        except ConnectionError:
            raise
        except Exception as e:
            raise ResponseAborted(resp.body_path) from e

    async def _send_file(self, writer: asyncio.StreamWriter, path: str, offset: int, count: int) -> None:
        if count == 0:
            return
        loop = asyncio.get_running_loop()
        with open(path, "rb") as f:
            await loop.sendfile(writer.transport, f, offset, count)

    def _simple_response(self, status: int, reason: str, extra=None) -> ResponseSpec:
        headers = {"Content-Type": "text/plain; charset=utf-8"}
        if extra:
            headers.update(extra)
        return ResponseSpec(status=status, reason=reason, headers=headers, body_size=0)

    @staticmethod
    def _http_date() -> str:
        dt = datetime.now(timezone.utc)
        return dt.strftime("%a, %d %b %Y %H:%M:%S GMT")
