"""Nanoleaf OpenAPI client.

Control-plane calls (auth check, layout, power, enabling external control,
pairing) go over HTTP.  Per-panel colors are streamed either over UDP using
the external-control v2 protocol (default, lowest latency) or as a static
animation over HTTP.

Protocol reference:
  - HTTP API:   http://<host>:16021/api/v1/<token>/...
  - Streaming:  UDP to <host>:60222, ext-control v2 frames
  - Discovery:  SSDP M-SEARCH to 239.255.255.250:1900
"""

import logging
import re
import socket
import struct
import time
from dataclasses import dataclass

import requests

from leafpipe.errors import AuthError, DispatchError, LeafpipeError

logger = logging.getLogger(__name__)

DEFAULT_API_PORT = 16021
STREAM_PORT = 60222
SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
SSDP_SEARCH_TARGETS = (
    "nanoleaf:nl29",  # Canvas
    "nanoleaf:nl42",  # Shapes
    "nanoleaf:nl52",  # Elements
    "nanoleaf_aurora:light",  # Light Panels
)

# Shape types that carry no LEDs (controllers, connectors, power supplies)
NON_LIGHT_SHAPES = frozenset({1, 12, 16, 19, 20})


@dataclass(frozen=True)
class Segment:
    panel_id: int
    x: int
    y: int
    shape_type: int


@dataclass(frozen=True)
class PanelLayout:
    """Light-emitting panels ordered left to right."""

    segments: tuple
    side_length: int = 0

    @property
    def segment_ids(self):
        return tuple(s.panel_id for s in self.segments)

    @classmethod
    def from_response(cls, data):
        """Build a layout from the /panelLayout/layout JSON body."""
        try:
            panels = [
                Segment(
                    panel_id=int(p["panelId"]),
                    x=int(p.get("x", 0)),
                    y=int(p.get("y", 0)),
                    shape_type=int(p.get("shapeType", 0)),
                )
                for p in data.get("positionData", [])
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Malformed layout response: {exc}") from exc

        lights = [p for p in panels if p.shape_type not in NON_LIGHT_SHAPES]
        lights.sort(key=lambda p: (p.x, p.y))
        return cls(segments=tuple(lights), side_length=int(data.get("sideLength", 0)))


def encode_stream_frame(colors, transition_ds=1):
    """Encode an ext-control v2 UDP frame.

    Args:
        colors: {panel_id: (r, g, b)} with channels 0-255.
        transition_ds: Transition time in deciseconds.

    Returns:
        bytes: nPanels (u16 BE), then per panel id (u16 BE), R, G, B, W,
        transition time (u16 BE).
    """
    buf = bytearray(struct.pack(">H", len(colors)))
    for panel_id, (r, g, b) in colors.items():
        buf += struct.pack(
            ">HBBBBH",
            int(panel_id),
            max(0, min(255, int(r))),
            max(0, min(255, int(g))),
            max(0, min(255, int(b))),
            0,
            int(transition_ds),
        )
    return bytes(buf)


def encode_anim_data(colors, transition_ds=1):
    """Encode a static-animation animData string for the HTTP transport."""
    parts = [str(len(colors))]
    for panel_id, (r, g, b) in colors.items():
        parts.append(f"{int(panel_id)} 1 {int(r)} {int(g)} {int(b)} 0 {int(transition_ds)}")
    return " ".join(parts)


class NanoleafClient:
    """Talks to one Nanoleaf controller.

    Usage:
        client = NanoleafClient("192.168.1.20", token)
        client.connect()                # raises AuthError on a bad token
        layout = client.get_layout()
        client.enable_streaming()
        client.send_colors({panel_id: (255, 0, 0)})
    """

    def __init__(self, host, token, port=DEFAULT_API_PORT, transport="udp",
                 timeout=2.0, session=None):
        if transport not in ("udp", "http"):
            raise ValueError(f"Invalid transport '{transport}'")
        self.host = host
        self.port = int(port)
        self.token = token or ""
        self.transport = transport
        self.timeout = float(timeout)
        self._session = session or requests.Session()
        self._sock = None
        self.info = None

    @property
    def base_url(self):
        return f"http://{self.host}:{self.port}/api/v1/{self.token}"

    # ------------------------------------------------------------------
    # HTTP control plane
    # ------------------------------------------------------------------

    def _request(self, method, path, **kwargs):
        """Make an authenticated API request and return the decoded body.

        Raises AuthError on 401/403; other HTTP and network failures
        propagate as requests exceptions.
        """
        url = f"{self.base_url}{path}"
        resp = self._session.request(method, url, timeout=self.timeout, **kwargs)
        if resp.status_code in (401, 403):
            raise AuthError(f"Nanoleaf at {self.host} rejected the auth token")
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()

    def connect(self):
        """Verify the token against the device.

        Returns the controller info dict.  Raises AuthError if the token is
        missing or rejected or the device cannot be reached.
        """
        if not self.token:
            raise AuthError("No Nanoleaf auth token configured (run with --pair)")
        try:
            self.info = self._request("GET", "/") or {}
        except requests.RequestException as exc:
            raise AuthError(f"Could not reach Nanoleaf at {self.host}:{self.port}: {exc}") from exc
        logger.info(
            "Connected to %s (%s, firmware %s)",
            self.info.get("name", self.host),
            self.info.get("model", "unknown model"),
            self.info.get("firmwareVersion", "?"),
        )
        return self.info

    def get_layout(self):
        """GET /panelLayout/layout and return the PanelLayout."""
        try:
            data = self._request("GET", "/panelLayout/layout") or {}
            layout = PanelLayout.from_response(data)
        except requests.RequestException as exc:
            raise LeafpipeError(f"Could not read panel layout from {self.host}: {exc}") from exc
        except ValueError as exc:
            raise LeafpipeError(f"Malformed panel layout from {self.host}: {exc}") from exc
        logger.info("Panel layout: %d light panel(s) of %d reported",
                    len(layout.segments), int(data.get("numPanels", 0)))
        return layout

    def enable_streaming(self):
        """Switch the controller into ext-control v2 mode and open the socket."""
        if self.transport != "udp":
            return
        try:
            self._request("PUT", "/effects", json={
                "write": {
                    "command": "display",
                    "animType": "extControl",
                    "extControlVersion": "v2",
                }
            })
        except requests.RequestException as exc:
            raise LeafpipeError(
                f"Could not enable streaming mode on {self.host}: {exc}"
            ) from exc
        self._open_socket()

    def _open_socket(self):
        if self._sock is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.connect((self.host, STREAM_PORT))
            sock.setblocking(False)
        except OSError as exc:
            sock.close()
            raise DispatchError(f"Failed to open UDP stream to {self.host}: {exc}") from exc
        self._sock = sock
        logger.info("Streaming to %s:%d (ext-control v2)", self.host, STREAM_PORT)

    def set_power(self, on):
        """Turn the panels on or off."""
        self._request("PUT", "/state", json={"on": {"value": bool(on)}})

    # ------------------------------------------------------------------
    # Color dispatch
    # ------------------------------------------------------------------

    def send_colors(self, colors, transition_ds=1):
        """Push {panel_id: (r, g, b)} to the panels.

        Fire-and-forget over UDP; over HTTP the request timeout bounds the
        call.  Raises DispatchError on any delivery failure.
        """
        if not colors:
            return
        if self.transport == "udp":
            if self._sock is None:
                raise DispatchError("UDP stream is not open")
            try:
                self._sock.send(encode_stream_frame(colors, transition_ds))
            except OSError as exc:
                raise DispatchError(f"UDP send to {self.host} failed: {exc}") from exc
            return

        try:
            self._request("PUT", "/effects", json={
                "write": {
                    "command": "display",
                    "animType": "static",
                    "animData": encode_anim_data(colors, transition_ds),
                    "loop": False,
                    "palette": [],
                }
            })
        except (requests.RequestException, AuthError) as exc:
            raise DispatchError(f"HTTP color update to {self.host} failed: {exc}") from exc

    def close(self):
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None
        self._session.close()

    # ------------------------------------------------------------------
    # Pairing
    # ------------------------------------------------------------------

    @staticmethod
    def pair(host, port=DEFAULT_API_PORT, timeout=5.0, session=None):
        """Request a new auth token.

        The controller must be in pairing mode (hold the power button for
        5-7 seconds until the LEDs flash).  Returns the token string.
        """
        http = session or requests
        try:
            resp = http.post(f"http://{host}:{port}/api/v1/new", timeout=timeout)
        except requests.RequestException as exc:
            raise AuthError(f"Could not reach Nanoleaf at {host}:{port}: {exc}") from exc
        if resp.status_code == 403:
            raise AuthError("Nanoleaf is not in pairing mode; hold the power button 5-7s and retry")
        resp.raise_for_status()
        token = resp.json().get("auth_token")
        if not token:
            raise AuthError("Nanoleaf pairing response did not contain a token")
        return token


# ----------------------------------------------------------------------
# Discovery
# ----------------------------------------------------------------------

def _search_message(target):
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        "MX: 2\r\n"
        f"ST: {target}\r\n"
        "\r\n"
    ).encode("ascii")


_LOCATION_RE = re.compile(r"^location:\s*https?://([^:/\s]+)(?::(\d+))?", re.IGNORECASE | re.MULTILINE)


def parse_ssdp_response(data):
    """Parse an SSDP reply into (host, port), or None if it isn't a Nanoleaf."""
    try:
        text = data.decode("utf-8", errors="replace")
    except AttributeError:
        text = str(data)
    if "nanoleaf" not in text.lower():
        return None
    match = _LOCATION_RE.search(text)
    if not match:
        return None
    port = int(match.group(2)) if match.group(2) else DEFAULT_API_PORT
    return match.group(1), port


def discover(timeout=5.0):
    """Find a Nanoleaf controller on the LAN via SSDP.

    Returns the first (host, port) found, or None after ``timeout`` seconds.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, struct.pack("b", 2))
        for target in SSDP_SEARCH_TARGETS:
            sock.sendto(_search_message(target), (SSDP_ADDR, SSDP_PORT))

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            sock.settimeout(remaining)
            try:
                data, _addr = sock.recvfrom(4096)
            except socket.timeout:
                break
            found = parse_ssdp_response(data)
            if found:
                logger.info("Discovered Nanoleaf at %s:%d", *found)
                return found
    except OSError as exc:
        logger.error("SSDP discovery failed: %s", exc)
    finally:
        sock.close()

    logger.warning("No Nanoleaf found within %.0fs", timeout)
    return None
