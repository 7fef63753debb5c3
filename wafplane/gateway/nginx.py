# wafplane/gateway/nginx.py
from __future__ import annotations

import logging
import shlex
import subprocess
from typing import List, Optional, Protocol, Sequence, Union

from wafplane.core.errors import GatewayError

logger = logging.getLogger("wafplane.gateway")

Command = Union[str, Sequence[str]]


class Gateway(Protocol):
    """Contrato con el data plane: la config ya esta escrita, solo se valida y se recarga."""

    def test(self) -> None:
        ...

    def reload(self) -> None:
        ...

    def apply_configuration(self, artifacts) -> None:
        ...


def _argv(cmd: Command) -> List[str]:
    if isinstance(cmd, str):
        return shlex.split(cmd)
    return [str(c) for c in cmd]


class NginxGateway:
    """
    Ejecuta `nginx -t` / `nginx -s reload` (o lo configurado) con timeout acotado.
    Cualquier fallo (exit != 0, timeout, binario ausente) -> GatewayError.
    """

    def __init__(
        self,
        *,
        test_cmd: Command = "nginx -t",
        reload_cmd: Command = "nginx -s reload",
        timeout_seconds: float = 20.0,
        cwd: Optional[str] = None,
    ) -> None:
        self.test_cmd = _argv(test_cmd)
        self.reload_cmd = _argv(reload_cmd)
        self.timeout_seconds = float(timeout_seconds)
        self.cwd = cwd

    def _run(self, label: str, argv: List[str]) -> str:
        if not argv:
            raise GatewayError(f"{label}: comando vacio")
        try:
            result = subprocess.run(
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired as e:
            raise GatewayError(f"{label}: timeout tras {self.timeout_seconds:.0f}s") from e
        except OSError as e:
            raise GatewayError(f"{label}: no se pudo ejecutar {argv[0]}: {e}") from e

        output = ((result.stdout or "") + (result.stderr or "")).strip()
        if result.returncode != 0:
            logger.error("%s fallo rc=%s: %s", label, result.returncode, output[-2000:])
            raise GatewayError(f"{label}: exit code {result.returncode}", output=output)
        return output

    def test(self) -> None:
        self._run("test", self.test_cmd)

    def reload(self) -> None:
        self._run("reload", self.reload_cmd)
        logger.info("gateway recargado")

    def apply_configuration(self, artifacts) -> None:
        # los archivos ya quedaron en CONFIG_DIR: aplicar == recargar
        self.reload()
