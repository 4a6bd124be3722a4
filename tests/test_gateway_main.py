import os
import tempfile
from unittest.mock import Mock, patch

import pytest

from errors import BindError, MqttConnectionError
from gateway import DEFAULT_CONFIG_PATH, StartupOptions, main, parse_options

VALID_CONFIG = """
InputUdpPort 9999
MqttUrl tcp://localhost:1883
MqttTopic sensors/1
MqttClientID gw-1
MqttQosLevel 0
"""

MISSING_URL_CONFIG = """
InputUdpPort 9999
MqttTopic sensors/1
MqttClientID gw-1
"""


@pytest.fixture
def config_file():
    paths = []

    def create(content: str) -> str:
        temp_file = tempfile.NamedTemporaryFile(mode="w", suffix=".conf", delete=False)
        temp_file.write(content)
        temp_file.close()
        paths.append(temp_file.name)
        return temp_file.name

    yield create
    for path in paths:
        os.unlink(path)


@pytest.fixture(autouse=True)
def no_logging_setup():
    """Keep the test runner's logging configuration intact."""
    with (
        patch("gateway.setup_logging"),
        patch("config.config.setup_logging"),
    ):
        yield


class TestParseOptions:
    def test_defaults(self):
        assert parse_options([]) == StartupOptions(DEFAULT_CONFIG_PATH, 0)

    def test_config_path_with_equals(self):
        assert parse_options(["-c=/tmp/gw.conf"]).config_path == "/tmp/gw.conf"

    def test_verbosity_is_counted(self):
        assert parse_options(["-v"]).verbosity == 1
        assert parse_options(["-v", "-v"]).verbosity == 2
        assert parse_options(["-vv", "-c=/tmp/gw.conf"]).verbosity == 2

    def test_help_exits_zero(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse_options(["-h"])
        assert exc_info.value.code == 0
        assert "usage" in capsys.readouterr().out

    def test_unknown_flag_exits_non_zero(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            parse_options(["-x"])
        assert exc_info.value.code != 0
        assert "usage" in capsys.readouterr().err


class TestMain:
    def test_main_runs_app(self, config_file):
        path = config_file(VALID_CONFIG)
        with (
            patch("gateway.GatewayApp") as MockApp,
            patch("asyncio.run") as mock_run,
        ):
            # Use Mock instead of AsyncMock for start() because we mock asyncio.run
            MockApp.return_value.start = Mock()

            assert main([f"-c={path}"]) == 0

        config = MockApp.call_args.args[0]
        assert config.input_udp_port == 9999
        assert config.mqtt_topic == "sensors/1"
        mock_run.assert_called_once()

    def test_main_missing_url_exits_before_opening_anything(self, config_file, capsys):
        path = config_file(MISSING_URL_CONFIG)
        with (
            patch("gateway.GatewayApp") as MockApp,
            patch("asyncio.run") as mock_run,
        ):
            assert main([f"-c={path}"]) == 1

        MockApp.assert_not_called()
        mock_run.assert_not_called()
        assert "invalid configuration" in capsys.readouterr().err

    def test_main_missing_config_file(self):
        with patch("gateway.GatewayApp") as MockApp:
            assert main(["-c=/nonexistent/udpmqttgw.conf"]) == 1
        MockApp.assert_not_called()

    @pytest.mark.parametrize(
        "error",
        [
            MqttConnectionError(4, "Bad user name or password"),
            BindError(9999, "in use"),
            OSError("socket closed"),
        ],
    )
    def test_main_startup_failure(self, config_file, error, capsys):
        path = config_file(VALID_CONFIG)
        with (
            patch("gateway.GatewayApp") as MockApp,
            patch("asyncio.run", side_effect=error),
        ):
            MockApp.return_value.start.return_value = None
            assert main([f"-c={path}"]) == 1

        assert "Fatal error" in capsys.readouterr().err

    def test_main_keyboard_interrupt(self, config_file):
        path = config_file(VALID_CONFIG)
        with (
            patch("gateway.GatewayApp") as MockApp,
            patch("asyncio.run", side_effect=KeyboardInterrupt),
        ):
            MockApp.return_value.start.return_value = None
            assert main([f"-c={path}"]) == 0
