import signal

import pytest

from leafpipe import app as app_module
from leafpipe.app import main, parse_args
from leafpipe.errors import CaptureError
from leafpipe.services.nanoleaf import PanelLayout, Segment


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for key in ("LP_NANOLEAF_HOST", "LP_NANOLEAF_TOKEN", "LP_STATUS_PORT"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(app_module.signal, "signal", lambda *args: None)
    return tmp_path


def test_parse_args():
    args = parse_args(["--intensity", "40", "--source", "Monitor", "-v"])
    assert args.intensity == 40
    assert args.source == "Monitor"
    assert args.verbose
    assert not args.pair


def test_missing_config_file_exits_with_config_error(isolated):
    assert main(["--config", str(isolated / "missing.toml")]) == 2


def test_intensity_out_of_range_is_config_error(isolated):
    assert main(["--intensity", "150"]) == 2


def test_rejected_device_exits_with_auth_error(isolated, monkeypatch):
    monkeypatch.setenv("LP_NANOLEAF_HOST", "127.0.0.1")
    # No token configured: the auth check fails before anything is opened
    assert main([]) == 3


def test_no_device_found_is_auth_error(isolated, monkeypatch):
    monkeypatch.setattr(app_module, "discover", lambda timeout: None)
    assert main([]) == 3


def test_pair_stores_token(isolated, monkeypatch, capsys):
    monkeypatch.setenv("LP_NANOLEAF_HOST", "10.0.0.5")
    calls = []

    def fake_pair(host, port, timeout=5.0):
        calls.append((host, port))
        return "new-token"

    monkeypatch.setattr(app_module.NanoleafClient, "pair", staticmethod(fake_pair))
    assert main(["--pair"]) == 0
    assert calls == [("10.0.0.5", 16021)]
    assert (isolated / "xdg" / "leafpipe" / "token.json").exists()
    assert "10.0.0.5" in capsys.readouterr().out


class FakeClient:
    host = "10.0.0.5"
    transport = "udp"

    def __init__(self):
        self.sends = []
        self.power = None
        self.closed = False

    def connect(self):
        return {"name": "fake"}

    def get_layout(self):
        return PanelLayout(segments=(Segment(1, 0, 0, 7), Segment(2, 100, 0, 7)))

    def enable_streaming(self):
        pass

    def send_colors(self, colors, transition_ds=1):
        self.sends.append(dict(colors))

    def set_power(self, on):
        self.power = on

    def close(self):
        self.closed = True


class SignallingSource:
    """Delivers a signal to the registered handler from inside a source call."""

    def __init__(self, handlers, signum, during="read"):
        self.handlers = handlers
        self.signum = signum
        self.during = during
        self.reads = 0
        self.closed = False

    def describe(self):
        return "fake"

    def open(self):
        if self.during == "open":
            self.handlers[self.signum](self.signum, None)

    def next_frame(self, timeout=None):
        if self.closed:
            raise CaptureError("source closed")
        self.reads += 1
        if self.reads == 3:
            self.handlers[self.signum](self.signum, None)
        return None

    def close(self):
        self.closed = True


def _run_with_signal(monkeypatch, signum, during):
    handlers = {}
    client = FakeClient()
    source = SignallingSource(handlers, signum, during)
    monkeypatch.setenv("LP_NANOLEAF_HOST", "10.0.0.5")
    monkeypatch.setattr(app_module.signal, "signal",
                        lambda signum, handler: handlers.__setitem__(signum, handler))
    monkeypatch.setattr(app_module, "NanoleafClient", lambda *args, **kwargs: client)
    monkeypatch.setattr(app_module, "create_source", lambda config: source)
    return main([]), client, source


@pytest.mark.parametrize("signum", [signal.SIGINT, signal.SIGTERM])
def test_signal_while_running_shuts_down_cleanly(isolated, monkeypatch, signum):
    code, client, source = _run_with_signal(monkeypatch, signum, during="read")
    assert code == 0
    assert source.reads == 3
    assert source.closed
    assert client.sends[-1] == {1: (0, 0, 0), 2: (0, 0, 0)}
    assert client.power is False
    assert client.closed


def test_signal_during_startup_shuts_down_cleanly(isolated, monkeypatch):
    code, client, source = _run_with_signal(monkeypatch, signal.SIGINT, during="open")
    assert code == 0
    assert source.reads == 0
    assert client.sends[-1] == {1: (0, 0, 0), 2: (0, 0, 0)}
    assert client.power is False
