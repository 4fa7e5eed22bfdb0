import asyncio
import contextlib
import enum
import random
import socket
import sys
from typing import Callable, Optional

from .announce import announce, service_url
from .config import Config
from .content_type import ContentType, detect_charset
from .engine import HTTPEngine
from .errors import BindError, ResourceAcquisitionError
from .models import CallbackContext
from .qr import print_qrcode
from .routes import RouteTable, build_routes
from .signals import ShutdownController
from .tls import TLSContext
from .upnp import ExternalIP

# above the privileged ports, below the usual ephemeral range
RANDOM_PORT_MIN = 0x400
RANDOM_PORT_MAX = 0x7fff


class State(enum.Enum):
    INIT = "init"
    BOUND = "bound"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


def choose_port(rng=random) -> int:
    return rng.randint(RANDOM_PORT_MIN, RANDOM_PORT_MAX)


class EventLoop:
    def __init__(self, factory: Callable[[], asyncio.AbstractEventLoop]) -> None:
        self._factory = factory
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def __enter__(self) -> "EventLoop":
        try:
            self.loop = self._factory()
        except (OSError, RuntimeError) as e:
            raise ResourceAcquisitionError(f"event loop creation failed: {e}") from e
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self.loop is not None and not self.loop.is_closed():
            self.loop.close()


class Listener:
    """The bound listening socket and the asyncio server accepting on it."""

    def __init__(self, loop: asyncio.AbstractEventLoop, config: Config, engine: HTTPEngine, ssl_context=None) -> None:
        self.loop = loop
        self.config = config
        self.engine = engine
        self.ssl_context = ssl_context
        self.server: Optional[asyncio.AbstractServer] = None

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self, host: str, port: int) -> None:
        sock = self._create_listen_socket(host, port)
        try:
            self.server = self.loop.run_until_complete(asyncio.start_server(
                self.engine.handle_connection,
                sock=sock,
                ssl=self.ssl_context,
                backlog=self.config.backlog,
                limit=self.config.max_header_bytes,
                start_serving=False,
            ))
        except (OSError, RuntimeError) as e:
            sock.close()
            raise ResourceAcquisitionError(f"HTTP listener creation failed: {e}") from e

    def start(self) -> None:
        assert self.server is not None
        self.loop.run_until_complete(self.server.start_serving())

    def close(self) -> None:
        server, self.server = self.server, None
        if server is None:
            return

        server.close()
        tasks = self.engine.abort()
        if tasks:
            self.loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
        self.loop.run_until_complete(server.wait_closed())

    def _create_listen_socket(self, host: str, port: int) -> socket.socket:
        """
        Create/bind/listen.
        Uses SO_REUSEADDR to make restarts easier.
        """
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError as e:
            raise ResourceAcquisitionError(f"socket creation failed: {e}") from e

        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(self.config.backlog)
        except OSError as e:
            sock.close()
            raise BindError(host, port, e) from e

        sock.setblocking(False)
        return sock


class HTTPServer:
    """
    Owns the event loop, the listener and everything bound to them.

    Resources are entered on a single ExitStack, so whatever was acquired is
    released in reverse order, whether bootstrap fails halfway or the loop
    stops on a signal.
    """

    def __init__(self, config: Config, loop_factory=asyncio.new_event_loop, rng=None,
                 render_qr: Callable[[str], None] = print_qrcode) -> None:
        self.config = config
        self._loop_factory = loop_factory
        self._rng = rng or random.Random()
        self._render_qr = render_qr

        self._stack = contextlib.ExitStack()
        self._state = State.INIT

        # Created on bind()
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.port: int = config.port
        self.context: Optional[CallbackContext] = None
        self.routes: Optional[RouteTable] = None
        self._tls: Optional[TLSContext] = None
        self._listener: Optional[Listener] = None

        # Created on serve()
        self.external_address: Optional[str] = None
        self.url: Optional[str] = None
        self.shutdown: Optional[ShutdownController] = None

    @property
    def state(self) -> State:
        return self._state

    def _set_state(self, state: State) -> None:
        if self.config.debug:
            print(f"Server state: {self._state.value} -> {state.value}", file=sys.stderr)
        self._state = state

    def run(self) -> None:
        self.bind()
        self.serve()

    def bind(self) -> None:
        if self._state is not State.INIT:
            raise RuntimeError(f"cannot bind in state {self._state.value}")
        try:
            self._bind()
        except BaseException:
            self._stack.close()
            raise
        self._set_state(State.BOUND)

    def _bind(self) -> None:
        self.loop = self._stack.enter_context(EventLoop(self._loop_factory)).loop
        self._tls = self._stack.enter_context(TLSContext(self.config.ssl))

        self.context = CallbackContext(
            prefix=self.config.prefix,
            files=self.config.files,
            content_type=ContentType(detect_charset()),
        )
        self.routes = build_routes(self.context)
        engine = HTTPEngine(self.config, self.routes)

        if not self.port:
            self.port = choose_port(self._rng)

        self._listener = self._stack.enter_context(
            Listener(self.loop, self.config, engine, self._tls.context))
        self._listener.open(self.config.bind, self.port)

    def serve(self) -> None:
        if self._state is not State.BOUND:
            raise RuntimeError(f"cannot serve in state {self._state.value}")
        try:
            extip = self._stack.enter_context(ExternalIP(self.port, self.config.bind, self.config.upnp))
            self.external_address = extip.addr
            self._tls.issue_certificate(self.external_address or self.config.bind)

            print(f"Ready to share {len(self.config.files)} files.", file=sys.stderr)
            print(f"Bound to {self.config.bind}:{self.port}.", file=sys.stderr)
            if self.external_address:
                self.url = service_url(self.external_address, self.port, self.config.prefix,
                                       self.config.files, self.config.ssl)
                announce(self.url, self._render_qr)

            self._listener.start()
            # signals are only dispatched from run_forever(), once RUNNING
            self.shutdown = self._stack.enter_context(ShutdownController(self.loop, self.request_stop))

            self._set_state(State.RUNNING)
            self.loop.run_forever()
        finally:
            self._stack.close()
            self._set_state(State.STOPPED)

    def request_stop(self) -> None:
        if self._state is not State.RUNNING:
            return
        self._set_state(State.STOPPING)
        self.loop.stop()
