from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class WafSettingsOut(BaseModel):
    bot_defense_enabled: bool
    ddos_enabled: bool
    sqli_enabled: bool
    auth_bypass_enabled: bool
    log_retention_days: int

    ddos_rate_rps: int
    ddos_burst: int
    ddos_conn_limit: int

    bot_ua_tokens: str
    bot_path_tokens: str

    sqli_threshold: int
    sqli_max_body: int
    sqli_probe_min_score: int
    sqli_probe_ban_score: int
    sqli_probe_window_sec: int

    authfail_threshold: int
    authfail_window_sec: int
    authfail_ban_hours: int

    autoban_threshold: int
    autoban_window_sec: int
    autoban_ban_hours: int


class WafSettingsPatch(BaseModel):
    """
    Patch parcial. Los numericos NO se validan con rangos aqui:
    el servicio los clampea (clamp, no reject).
    """
    bot_defense_enabled: Optional[bool] = None
    ddos_enabled: Optional[bool] = None
    sqli_enabled: Optional[bool] = None
    auth_bypass_enabled: Optional[bool] = None
    log_retention_days: Optional[int] = None

    ddos_rate_rps: Optional[int] = None
    ddos_burst: Optional[int] = None
    ddos_conn_limit: Optional[int] = None

    bot_ua_tokens: Optional[str] = None
    bot_path_tokens: Optional[str] = None

    sqli_threshold: Optional[int] = None
    sqli_max_body: Optional[int] = None
    sqli_probe_min_score: Optional[int] = None
    sqli_probe_ban_score: Optional[int] = None
    sqli_probe_window_sec: Optional[int] = None

    authfail_threshold: Optional[int] = None
    authfail_window_sec: Optional[int] = None
    authfail_ban_hours: Optional[int] = None

    autoban_threshold: Optional[int] = None
    autoban_window_sec: Optional[int] = None
    autoban_ban_hours: Optional[int] = None
