import subprocess
from unittest.mock import Mock, patch

import pytest

from wafplane.core.errors import GatewayError
from wafplane.gateway.nginx import NginxGateway


class TestNginxGateway:
    def setup_method(self):
        self.gateway = NginxGateway(
            test_cmd="nginx -t -c /etc/nginx/nginx.conf",
            reload_cmd=["nginx", "-s", "reload"],
            timeout_seconds=5,
        )

    def test_commands_are_split(self):
        assert self.gateway.test_cmd == ["nginx", "-t", "-c", "/etc/nginx/nginx.conf"]
        assert self.gateway.reload_cmd == ["nginx", "-s", "reload"]

    @patch("wafplane.gateway.nginx.subprocess.run")
    def test_test_success(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="syntax is ok")
        self.gateway.test()

        args, kwargs = mock_run.call_args
        assert args[0] == ["nginx", "-t", "-c", "/etc/nginx/nginx.conf"]
        assert kwargs["timeout"] == 5.0
        assert kwargs["capture_output"] is True

    @patch("wafplane.gateway.nginx.subprocess.run")
    def test_nonzero_exit_raises_with_output(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr='unknown directive "geoip2"')
        with pytest.raises(GatewayError) as exc:
            self.gateway.test()
        assert "exit code 1" in str(exc.value)
        assert "geoip2" in exc.value.output

    @patch("wafplane.gateway.nginx.subprocess.run")
    def test_timeout_raises(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="nginx", timeout=5)
        with pytest.raises(GatewayError, match="timeout"):
            self.gateway.reload()

    @patch("wafplane.gateway.nginx.subprocess.run")
    def test_missing_binary_raises(self, mock_run):
        mock_run.side_effect = FileNotFoundError("nginx")
        with pytest.raises(GatewayError):
            self.gateway.test()

    @patch("wafplane.gateway.nginx.subprocess.run")
    def test_apply_configuration_reloads(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")
        self.gateway.apply_configuration(artifacts=None)
        assert mock_run.call_args[0][0] == ["nginx", "-s", "reload"]

    def test_empty_command(self):
        gw = NginxGateway(test_cmd="", reload_cmd="nginx -s reload")
        with pytest.raises(GatewayError, match="vacio"):
            gw.test()
