import os

# el engine por default de wafplane.db no se usa en tests, pero no debe tocar disco
os.environ.setdefault("DATABASE_URL", "sqlite://")

import json
from datetime import timedelta
from typing import List

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import wafplane.models  # noqa: F401  (registra tablas en Base.metadata)
from wafplane.config import Settings
from wafplane.core.errors import GatewayError
from wafplane.core.timeutils import utcnow
from wafplane.db import Base
from wafplane.workers.control_plane import ControlPlane


class FakeGateway:
    """Gateway en memoria: registra llamadas y falla a pedido."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.applied = []
        # cuantos `test()` consecutivos fallan antes de pasar
        self.test_failures = 0
        self.fail_apply = False

    def test(self) -> None:
        self.calls.append("test")
        if self.test_failures > 0:
            self.test_failures -= 1
            raise GatewayError("test: exit code 1", output="nginx: [emerg] unknown directive")

    def reload(self) -> None:
        self.calls.append("reload")
        if self.fail_apply:
            raise GatewayError("reload: exit code 1")

    def apply_configuration(self, artifacts) -> None:
        self.reload()
        self.applied.append(artifacts)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def attack_line(ip: str, offense: str = "authfail", *, seconds_ago: float = 0, **extra) -> str:
    ts = utcnow() - timedelta(seconds=seconds_ago)
    obj = {
        "ts": ts.isoformat(),
        "ip": ip,
        "type": offense,
        "host": "app.example.com",
        "method": "POST",
        "uri": "/login",
        "status": 401,
        "ua": "Mozilla/5.0",
        "ref": "-",
        "auth": 0,
    }
    obj.update(extra)
    return json.dumps(obj)


@pytest.fixture
def make_attack_line():
    return attack_line


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    Base.metadata.drop_all(eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cfg(tmp_path):
    return Settings(
        DATABASE_URL="sqlite://",
        ATTACK_LOG_PATH=str(tmp_path / "logs" / "waf_attacks.log"),
        THREAT_LOG_PATH=str(tmp_path / "logs" / "web_threat_events.log"),
        THREAT_CURSOR_PATH=str(tmp_path / "logs" / ".web_threat_events.state.json"),
        CONFIG_DIR=str(tmp_path / "nginx"),
        GEOIP_DIR=str(tmp_path / "geoip"),
        SQLI_LUA_PATH="/etc/wafplane/lua/sqli_score.lua",
        RELOAD_MIN_INTERVAL_SECONDS=30,
        IP_RANGES_ENABLED=False,
        CONTROL_PLANE_ENABLED=False,
    )


@pytest.fixture
def plane(cfg, session_factory, gateway, clock):
    os.makedirs(os.path.dirname(cfg.ATTACK_LOG_PATH), exist_ok=True)
    p = ControlPlane(cfg, session_factory=session_factory, gateway=gateway, clock=clock)
    p.bootstrap()
    yield p
    p.stop()
