# wafplane/config.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # --- DB ---
    DATABASE_URL: str = "sqlite:///./wafplane.db"

    # --- Logs del gateway (tailers) ---
    ATTACK_LOG_PATH: str = "/data/logs/waf_attacks.log"
    THREAT_LOG_PATH: str = "/data/logs/web_threat_events.log"
    # El log secundario guarda su cursor en un archivo sidecar (no en DB)
    THREAT_CURSOR_PATH: str = "/data/logs/.web_threat_events.state.json"

    ATTACK_POLL_SECONDS: int = 15
    THREAT_POLL_SECONDS: int = 10
    STARTUP_DELAY_SECONDS: float = 2.0
    MAX_READ_BYTES: int = 4 * 1024 * 1024

    # --- Compiler / reload ---
    RELOAD_MIN_INTERVAL_SECONDS: int = 30
    RELOAD_POLL_SECONDS: int = 60
    CONFIG_DIR: str = "/data/nginx/custom"
    GEOIP_DIR: str = "/data/geoip"
    SQLI_LUA_PATH: str = "/etc/wafplane/lua/sqli_score.lua"
    # flock en CONFIG_DIR compartido por API y worker
    APPLY_LOCK_TIMEOUT_SECONDS: float = 60.0

    # --- Gateway (nginx u otro) ---
    GATEWAY_TEST_CMD: str = "nginx -t"
    GATEWAY_RELOAD_CMD: str = "nginx -s reload"
    GATEWAY_TIMEOUT_SECONDS: int = 20

    # --- Auto-ban por tipo (opt-in / opt-out) ---
    # ddos apagado por default: el 429 ya frena al cliente y banear rafagas legitimas da falsos positivos
    AUTOBAN_DDOS: bool = False
    AUTOBAN_AUTHFAIL: bool = True
    AUTOBAN_BOT: bool = True
    AUTOBAN_SQLI: bool = True

    # --- Enrichment (best effort) ---
    IP_RANGES_ENABLED: bool = True
    IP_RANGES_REFRESH_SECONDS: int = 6 * 60 * 60
    HTTP_CONNECT_TIMEOUT: float = 3.0
    HTTP_READ_TIMEOUT: float = 10.0
    HTTP_MAX_REDIRECTS: int = 3
    GEOIP_COUNTRY_DB_PATH: Optional[str] = None

    # --- Proceso ---
    CONTROL_PLANE_ENABLED: bool = False
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
