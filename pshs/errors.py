import sys


class PshsError(Exception):
    pass


class ArgumentError(PshsError):
    def __init__(self, message: str, usage: str = "") -> None:
        super().__init__(message)
        self.usage = usage


class ResourceAcquisitionError(PshsError):
    pass


class BindError(PshsError):
    def __init__(self, host: str, port: int, reason: object) -> None:
        super().__init__(f"bind({host}, {port}) failed: {reason}")
        self.host = host
        self.port = port


def warn(message: str) -> None:
    """Report a non-fatal problem; execution continues."""
    print(f"warning: {message}", file=sys.stderr)
