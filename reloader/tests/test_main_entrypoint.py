from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.config.config_exception import ConfigException

from reloader.src.__main__ import (
    EXIT_CONFIG,
    EXIT_FATAL,
    JSONFormatter,
    main,
    redact_sensitive_text,
)
from reloader.src.informer import WatchSubscriptionError


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
        **extra: object,
    ) -> logging.LogRecord:
        record = logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "thread" in parsed

    def test_format_includes_secret_and_target_context(self) -> None:
        record = self._make_record(
            secret="ns/db-creds", target="Deployment/ns/api", outcome="success"
        )

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["secret"] == "ns/db-creds"
        assert parsed["target"] == "Deployment/ns/api"
        assert parsed["outcome"] == "success"

    def test_format_omits_absent_context(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert "secret" not in parsed
        assert "target" not in parsed
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
            raise ValueError("password=hunter2")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "[REDACTED]" in parsed["error"]
        assert "hunter2" not in parsed["error"]


def test_redaction_leaves_ordinary_text_alone() -> None:
    text = "Set secret-fingerprint/db-creds=0123abcd on Deployment/ns/api"

    assert redact_sensitive_text(text) == text


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def _mock_controller(self) -> MagicMock:
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()

        # run_forever should set the shutdown event to exit immediately
        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            if shutdown_event is not None:
                shutdown_event.set()

        mock_controller.run_forever.side_effect = fake_run_forever
        return mock_controller

    def test_main_runs_controller_and_stops_health_server(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.setenv("HEALTH_PORT", "9191")
        mock_controller = self._mock_controller()

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "reloader.src.__main__.SecretReloader", return_value=mock_controller
            ) as mock_cls,
            patch("reloader.src.__main__.start_health_server") as mock_health,
            patch("reloader.src.__main__.signal.signal") as mock_signal,
        ):
            exit_code = main()

        assert exit_code == 0
        mock_controller.run_forever.assert_called_once()
        assert mock_cls.call_args.kwargs["config"].health_port == 9191
        assert mock_health.call_args.kwargs["ready"] is mock_controller.ready
        assert mock_health.call_args.kwargs["port"] == 9191
        mock_health.return_value.shutdown.assert_called_once()
        registered = {call.args[0] for call in mock_signal.call_args_list}
        assert registered == {signal.SIGTERM, signal.SIGINT}

    def test_main_skips_health_server_when_disabled(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("HEALTH_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch(
                "reloader.src.__main__.SecretReloader", return_value=self._mock_controller()
            ),
            patch("reloader.src.__main__.start_health_server") as mock_health,
            patch("reloader.src.__main__.signal.signal"),
        ):
            assert main() == 0

        mock_health.assert_not_called()

    def test_signal_handler_sets_shutdown_event(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_ENABLED", "false")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        handlers = {}
        observed: dict[str, bool] = {}

        def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
            assert shutdown_event is not None
            handlers[signal.SIGTERM](signal.SIGTERM, None)
            observed["set"] = shutdown_event.is_set()

        mock_controller = MagicMock()
        mock_controller.run_forever.side_effect = fake_run_forever

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.SecretReloader", return_value=mock_controller),
            patch(
                "reloader.src.__main__.signal.signal",
                side_effect=lambda signum, handler: handlers.__setitem__(signum, handler),
            ),
        ):
            assert main() == 0

        assert observed == {"set": True}

    def test_main_returns_config_exit_code_on_invalid_configuration(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("WORKERS", "0")
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        with (
            patch("reloader.src.__main__.load_kube_configuration") as mock_kube,
            patch("reloader.src.__main__.SecretReloader") as mock_cls,
        ):
            exit_code = main()

        assert exit_code == EXIT_CONFIG
        mock_kube.assert_not_called()
        mock_cls.assert_not_called()

    def test_main_returns_fatal_exit_code_when_watch_is_denied(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        mock_controller = MagicMock()
        mock_controller.ready = threading.Event()
        mock_controller.run_forever.side_effect = WatchSubscriptionError("status=403")

        with (
            patch("reloader.src.__main__.load_kube_configuration"),
            patch(
                "reloader.src.__main__.build_clients",
                return_value=(SimpleNamespace(), SimpleNamespace()),
            ),
            patch("reloader.src.__main__.SecretReloader", return_value=mock_controller),
            patch("reloader.src.__main__.start_health_server") as mock_health,
            patch("reloader.src.__main__.signal.signal"),
        ):
            exit_code = main()

        assert exit_code == EXIT_FATAL
        mock_health.return_value.shutdown.assert_called_once()

    def test_main_returns_fatal_exit_code_without_cluster_configuration(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_LEVEL", "WARNING")

        with (
            patch(
                "reloader.src.__main__.load_kube_configuration",
                side_effect=ConfigException("Invalid kube-config file. No configuration found."),
            ),
            patch("reloader.src.__main__.build_clients") as mock_clients,
            patch("reloader.src.__main__.SecretReloader") as mock_cls,
            patch("reloader.src.__main__.start_health_server") as mock_health,
        ):
            exit_code = main()

        assert exit_code == EXIT_FATAL
        mock_clients.assert_not_called()
        mock_cls.assert_not_called()
        mock_health.assert_not_called()
