import sys

from pshs.config import PROG, parse_args
from pshs.errors import ArgumentError, BindError, ResourceAcquisitionError
from pshs.server import HTTPServer as Server


def main(argv=None) -> int:
    try:
        config = parse_args(argv)
    except ArgumentError as e:
        if e.usage:
            print(e.usage, end="", file=sys.stderr)
        print(f"{PROG}: error: {e}", file=sys.stderr)
        return 1

    if config.debug:
        print(f"Starting server on {config.bind}:{config.port or 'random'}, sharing {len(config.files)} files.",
              file=sys.stderr)
    server = Server(config)
    try:
        server.run()
    except (ResourceAcquisitionError, BindError) as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        # interrupted before the signal watchers were armed
        print(f"{PROG}: interrupted during startup.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
