from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from stablesync.src.__main__ import JSONFormatter, main, redact_sensitive_text


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "thread" in parsed
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="token=abc123 password=hunter2 Authorization: Bearer abc.def.ghi"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "hunter2" not in message
        assert "abc.def.ghi" not in message

    def test_format_redacts_sensitive_values_in_exception_text(self) -> None:
        try:
            raise ValueError("token=abc123")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "abc123" not in parsed["error"]


def test_redaction_leaves_ordinary_text_alone() -> None:
    text = "Updating pod ns/p1 label rollouts-pod-template-hash to v2"
    assert redact_sensitive_text(text) == text


def _fake_controller(run_forever: object = None) -> MagicMock:
    controller = MagicMock()
    controller.ready = threading.Event()

    def fake_run_forever(shutdown_event: threading.Event | None = None) -> bool:
        if shutdown_event is not None:
            shutdown_event.set()
        return True

    controller.run_forever.side_effect = run_forever or fake_run_forever
    return controller


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_components(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("HEALTH_PORT", raising=False)
        controller = _fake_controller()
        core_api, custom_api = SimpleNamespace(), SimpleNamespace()

        with (
            patch("stablesync.src.__main__.load_kube_configuration") as mock_load,
            patch(
                "stablesync.src.__main__.build_clients",
                return_value=(core_api, custom_api),
            ),
            patch(
                "stablesync.src.__main__.build_controller_from_env",
                return_value=controller,
            ) as mock_build,
            patch("stablesync.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_load.assert_called_once()
        assert mock_build.call_args.kwargs == {"core_api": core_api, "custom_api": custom_api}
        assert mock_health.call_args.kwargs["ready"] is controller.ready
        assert mock_health.call_args.kwargs["port"] == 8080
        controller.run_forever.assert_called_once()
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_shuts_down_health_server_when_controller_fails(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        def failing_run_forever(shutdown_event: threading.Event | None = None) -> None:
            raise RuntimeError("controller crashed")

        controller = _fake_controller(failing_run_forever)

        with (
            patch("stablesync.src.__main__.load_kube_configuration"),
            patch(
                "stablesync.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "stablesync.src.__main__.build_controller_from_env",
                return_value=controller,
            ),
            patch("stablesync.src.__main__.start_health_server") as mock_health,
            pytest.raises(RuntimeError, match="controller crashed"),
        ):
            mock_health.return_value = MagicMock()
            main()

        mock_health.return_value.shutdown.assert_called_once()

    def test_main_exits_non_zero_when_controller_stops_on_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        def unclean_run_forever(shutdown_event: threading.Event | None = None) -> bool:
            return False

        with (
            patch("stablesync.src.__main__.load_kube_configuration"),
            patch(
                "stablesync.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "stablesync.src.__main__.build_controller_from_env",
                return_value=_fake_controller(unclean_run_forever),
            ),
            patch("stablesync.src.__main__.start_health_server") as mock_health,
            pytest.raises(SystemExit) as exc_info,
        ):
            mock_health.return_value = MagicMock()
            main()

        assert exc_info.value.code == 1
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Verify SIGTERM and SIGINT handlers are registered."""
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with (
            patch("stablesync.src.__main__.load_kube_configuration"),
            patch(
                "stablesync.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "stablesync.src.__main__.build_controller_from_env",
                return_value=_fake_controller(),
            ),
            patch("stablesync.src.__main__.start_health_server") as mock_health,
            patch("stablesync.src.__main__.signal.signal", side_effect=tracking_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_signal_handler_sets_shutdown_event(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        handlers: dict[int, object] = {}
        observed: list[bool] = []

        def capture_signal(signum: int, handler: object) -> None:
            handlers[signum] = handler

        def run_forever(shutdown_event: threading.Event | None = None) -> bool:
            assert shutdown_event is not None
            handlers[signal.SIGTERM](signal.SIGTERM, None)  # type: ignore[operator]
            observed.append(shutdown_event.is_set())
            return True

        with (
            patch("stablesync.src.__main__.load_kube_configuration"),
            patch(
                "stablesync.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "stablesync.src.__main__.build_controller_from_env",
                return_value=_fake_controller(run_forever),
            ),
            patch("stablesync.src.__main__.start_health_server") as mock_health,
            patch("stablesync.src.__main__.signal.signal", side_effect=capture_signal),
        ):
            mock_health.return_value = MagicMock()
            main()

        assert observed == [True]

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("stablesync.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ValueError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main()

        mock_load.assert_not_called()
