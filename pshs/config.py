import argparse
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from .errors import ArgumentError

PROG = "pshs"
VERSION = "0.4.3"


@dataclass(frozen=True)
class Config:
    files: Tuple[str, ...]
    prefix: Optional[str] = None
    bind: str = "0.0.0.0"
    port: int = 0
    ssl: bool = False
    upnp: bool = True
    backlog: int = 128
    max_header_bytes: int = 65536
    debug: bool = False

    def __post_init__(self) -> None:
        if not self.files:
            raise ArgumentError("no files supplied")
        if not 0 <= self.port < 0xffff:
            raise ArgumentError(f"Invalid port number: {self.port}")


class _Parser(argparse.ArgumentParser):
    def error(self, message):
        raise ArgumentError(message, usage=self.format_usage())


# strtol(..., 0) syntax: optional blanks and sign, then hex, octal or decimal digits
_PORT_RE = re.compile(r"[ \t\n\v\f\r]*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


def _port(value: str) -> int:
    match = _PORT_RE.fullmatch(value)
    if match is None:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")
    sign, digits = match.groups()
    if digits[:2].lower() == "0x":
        port = int(digits[2:], 16)
    elif digits.startswith("0"):
        port = int(digits, 8)
    else:
        port = int(digits)
    if sign == "-":
        port = -port
    # must fit in uint16, 0 is reserved for "random"
    if not 0 < port < 0xffff:
        raise argparse.ArgumentTypeError(f"Invalid port number: {value}")
    return port


def _strip_dot_slash(path: str) -> str:
    if path.startswith("./"):
        return path[2:]
    return path


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog=PROG, description="Pretty small HTTP server - share files over HTTP(S)")
    parser.add_argument("--version", "-V", action="version", version=f"%(prog)s {VERSION}",
                        help="print program version and exit")
    parser.add_argument("--bind", "-b", metavar="IP", default="0.0.0.0", help="bind the server to IP address")
    parser.add_argument("--port", "-p", metavar="N", type=_port, default=0,
                        help="set port to listen on (default: random)")
    parser.add_argument("--prefix", "-P", metavar="PFX", help="require all URLs to start with the prefix PFX")
    parser.add_argument("--ssl", "-s", action="store_true", help="enable SSL/TLS socket")
    parser.add_argument("--no-upnp", "-U", dest="upnp", action="store_false",
                        help="disable port redirection using UPnP")
    parser.add_argument("--debug", "-D", action="store_true", help="enable debug mode")
    parser.add_argument("files", nargs="*", metavar="file", help="files to share")
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    parser = build_parser()
    # operands may come before, between or after options
    args = parser.parse_intermixed_args(argv)

    if not args.files:
        raise ArgumentError("no files supplied", usage=parser.format_usage())

    # "./" prefixes are known to cause trouble in URLs
    files = tuple(_strip_dot_slash(f) for f in args.files)
    prefix = (args.prefix or "").strip("/") or None

    return Config(
        files=files,
        prefix=prefix,
        bind=args.bind,
        port=args.port,
        ssl=args.ssl,
        upnp=args.upnp,
        debug=args.debug,
    )
