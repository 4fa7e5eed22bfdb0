from typing import Optional

from .errors import warn

UNSPECIFIED_ADDRESSES = ("", "0.0.0.0", "::")
DISCOVER_DELAY_MS = 2000


class ExternalIP:
    """
    Best-effort UPnP port redirection.

    On enter, asks the local Internet Gateway Device for its external address
    and maps the server port to this host; on exit, removes the mapping.
    Any failure leaves `addr` as None and is only reported as a warning.
    """

    def __init__(self, port: int, bind: str, enabled: bool = True, description: str = "pshs") -> None:
        self.port = port
        self.bind = bind
        self.enabled = enabled
        self.description = description
        self.addr: Optional[str] = None
        self._upnp = None

    def __enter__(self) -> "ExternalIP":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def open(self) -> Optional[str]:
        if not self.enabled:
            return None

        try:
            import miniupnpc
        except ImportError:
            warn("miniupnpc is not installed, UPnP port redirection disabled.")
            return None

        # miniupnpc reports every failure as a bare Exception
        try:
            upnp = miniupnpc.UPnP()
            upnp.discoverdelay = DISCOVER_DELAY_MS
            if not upnp.discover():
                warn("no UPnP devices found.")
                return None
            upnp.selectigd()

            addr = upnp.externalipaddress()
            if not addr:
                warn("UPnP gateway did not report an external address.")
                return None

            lanaddr = upnp.lanaddr if self.bind in UNSPECIFIED_ADDRESSES else self.bind
            if not upnp.addportmapping(self.port, "TCP", lanaddr, self.port, self.description, ""):
                warn(f"UPnP port mapping for {lanaddr}:{self.port} was refused.")
                return None
        except Exception as e:
            warn(f"UPnP port redirection failed: {e}")
            return None

        self._upnp = upnp
        self.addr = addr
        return addr

    def close(self) -> None:
        upnp, self._upnp = self._upnp, None
        if upnp is None:
            return
        try:
            upnp.deleteportmapping(self.port, "TCP")
        except Exception as e:
            warn(f"unable to remove UPnP port mapping: {e}")
