# wafplane/core/errors.py
from __future__ import annotations

from typing import Optional


class WafPlaneError(Exception):
    """Base de errores del control plane."""


class RuleValidationError(WafPlaneError, ValueError):
    """CIDR / country code invalido en una alta o edicion administrativa."""


class PolicyInvariantError(WafPlaneError):
    """
    Estado imposible en el store de politicas (ej. dos versiones activas en el mismo set).
    No se "adivina" cual es la buena: la operacion falla.
    """


class GatewayError(WafPlaneError):
    def __init__(self, message: str, *, output: Optional[str] = None) -> None:
        super().__init__(message)
        self.output = output


class ConfigApplyError(WafPlaneError):
    """Fallo en compile/write/test/apply. `stage` indica en que paso."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"{stage}: {message}")
        self.stage = stage
