# wafplane/services/policy_normalizer.py
"""
Normalizacion de documentos de politica (web threat controls).

Todo documento pasa por `normalize_policy` antes de persistirse:
  - llaves desconocidas se descartan
  - enums se fuerzan a un set cerrado con fallback
  - numericos se clampean
  - el resultado siempre es un documento completo (mismo shape que DEFAULT_POLICY)

normalize_policy(normalize_policy(x)) == normalize_policy(x)
"""
from __future__ import annotations

import copy
import json
import re
from typing import Any, Dict, List

from wafplane.core.clamp import clamp_int, normalize_choice
from wafplane.core.net import sanitize_cidr

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

INBOUND_MODES = ("off", "monitor", "enforce")
BROWSER_MODES = ("off", "report-only", "enforce")
OUTBOUND_MODES = ("off", "monitor", "enforce")
HEADER_PRESETS = ("balanced", "strict", "custom")
SAMESITE_VALUES = ("lax", "strict", "none")
OUTBOUND_CAPABILITIES = ("auto", "available", "unavailable")

METHOD_RE = re.compile(r"^[A-Z]{3,10}$")
CSP_DIRECTIVE_RE = re.compile(r"^[a-z][a-z-]{0,63}$")

MAX_METHODS = 16
MAX_TRUSTED_PROXIES = 64
MAX_CSP_DIRECTIVES = 32
MAX_CSP_SOURCES = 32
MAX_COOKIE_EXCEPTIONS = 64
MAX_OUTBOUND_ALLOWLIST = 256
MAX_TEXT = 256


DEFAULT_POLICY: Dict[str, Any] = {
    "mode": "monitor",
    "inbound": {
        "enabled": True,
        "enforcement": {"mode": "monitor", "reject_status": 400},
        "framing": {
            "reject_multiple_content_length": True,
            "reject_cl_te_conflict": True,
            "reject_invalid_chunked": True,
            "max_request_line_bytes": 4096,
            "max_header_line_bytes": 8192,
            "max_headers_bytes": 65536,
        },
        "methods": {
            "allowed": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
            "block_trace": True,
            "block_connect": True,
        },
        "path_normalization": {
            "collapse_slashes": True,
            "normalize_dot_segments": True,
            "reject_double_encoded_traversal": True,
        },
        "limits": {
            "max_body_bytes_default": 26214400,
            "client_read_seconds": 15,
        },
        "forwarded_trust": {
            "trusted_proxy_cidrs": [],
            "strip_untrusted_forwarded": True,
        },
    },
    "browser": {
        "enabled": True,
        "enforcement": {"mode": "report-only"},
        "headers_preset": "balanced",
        "hsts": {"enabled": "auto", "max_age": 15552000, "include_subdomains": False, "preload": False},
        "csp": {
            "mode": "report-only",
            "directives": {
                "default-src": ["'self'"],
                "object-src": ["'none'"],
                "base-uri": ["'none'"],
                "frame-ancestors": ["'none'"],
                "img-src": ["'self'", "data:", "https:"],
                "connect-src": ["'self'", "https:"],
            },
            "report_endpoint": "/__waf/csp-report",
        },
        "cookie_flags": {
            "enabled": False,
            "force_secure": True,
            "force_httponly": True,
            "samesite": "Lax",
            "exceptions": [],
        },
    },
    "outbound": {
        "enabled": True,
        "enforcement": {"mode": "monitor"},
        "capability": "auto",
        "schemes": {"allow_https": True, "allow_http": False},
        "allowlist": [],
        "block_private_ranges": True,
        "redirects": {"allow": True, "max": 3},
        "dns_pinning": True,
        "timeouts": {"connect_ms": 2000, "read_ms": 5000},
        "max_response_bytes": 2097152,
    },
}


def default_policy() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_POLICY)


# ----------------------------
# Helpers
# ----------------------------

def _parse(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        try:
            data = json.loads(value)
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    return {}


def _d(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _default_true(value: Any) -> bool:
    return value is not False


def _default_false(value: Any) -> bool:
    return value is True


def _text(value: Any, fallback: str) -> str:
    if not isinstance(value, str):
        return fallback
    # primero se corta y luego se hace strip: el resultado ya es estable
    return value[:MAX_TEXT].strip()


def _str_list(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for it in value:
        if not isinstance(it, str):
            continue
        s = it[:MAX_TEXT].strip()
        if s and s not in out:
            out.append(s)
    return out[:limit]


def _normalize_methods(value: Any) -> List[str]:
    items = value if isinstance(value, list) else []
    out: List[str] = []
    for it in items:
        s = str(it if it is not None else "").strip().upper()
        if not METHOD_RE.match(s):
            continue
        if s not in out:
            out.append(s)
    return out[:MAX_METHODS]


def _normalize_cidr_list(value: Any) -> List[str]:
    items = value if isinstance(value, list) else []
    out: List[str] = []
    for it in items:
        cidr = sanitize_cidr(it)
        if cidr and cidr not in out:
            out.append(cidr)
    return out[:MAX_TRUSTED_PROXIES]


def _normalize_directives(value: Any) -> Dict[str, List[str]]:
    if not isinstance(value, dict):
        return copy.deepcopy(DEFAULT_POLICY["browser"]["csp"]["directives"])
    out: Dict[str, List[str]] = {}
    for k in sorted(value.keys(), key=str):
        name = str(k).strip().lower()
        if not CSP_DIRECTIVE_RE.match(name) or name in out:
            continue
        raw = value[k]
        if isinstance(raw, str):
            raw = raw.split()
        sources = [s for s in _str_list(raw, MAX_CSP_SOURCES) if " " not in s and ";" not in s]
        out[name] = sources
        if len(out) >= MAX_CSP_DIRECTIVES:
            break
    return out


def _normalize_hsts_enabled(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    return "auto"


# ----------------------------
# Secciones
# ----------------------------

def _normalize_inbound(p: Dict[str, Any]) -> Dict[str, Any]:
    d = DEFAULT_POLICY["inbound"]
    enf = _d(p.get("enforcement"))
    framing = _d(p.get("framing"))
    methods = _d(p.get("methods"))
    pn = _d(p.get("path_normalization"))
    limits = _d(p.get("limits"))
    ft = _d(p.get("forwarded_trust"))

    allowed = _normalize_methods(methods.get("allowed", d["methods"]["allowed"]))

    return {
        "enabled": _default_true(p.get("enabled")),
        "enforcement": {
            "mode": normalize_choice(enf.get("mode"), INBOUND_MODES, "monitor"),
            "reject_status": clamp_int(enf.get("reject_status"), 400, 499, 400),
        },
        "framing": {
            "reject_multiple_content_length": _default_true(framing.get("reject_multiple_content_length")),
            "reject_cl_te_conflict": _default_true(framing.get("reject_cl_te_conflict")),
            "reject_invalid_chunked": _default_true(framing.get("reject_invalid_chunked")),
            "max_request_line_bytes": clamp_int(
                framing.get("max_request_line_bytes"), 256, MIB, d["framing"]["max_request_line_bytes"]
            ),
            "max_header_line_bytes": clamp_int(
                framing.get("max_header_line_bytes"), 256, MIB, d["framing"]["max_header_line_bytes"]
            ),
            "max_headers_bytes": clamp_int(framing.get("max_headers_bytes"), 1024, MIB, d["framing"]["max_headers_bytes"]),
        },
        "methods": {
            "allowed": allowed or list(d["methods"]["allowed"]),
            "block_trace": _default_true(methods.get("block_trace")),
            "block_connect": _default_true(methods.get("block_connect")),
        },
        "path_normalization": {
            "collapse_slashes": _default_true(pn.get("collapse_slashes")),
            "normalize_dot_segments": _default_true(pn.get("normalize_dot_segments")),
            "reject_double_encoded_traversal": _default_true(pn.get("reject_double_encoded_traversal")),
        },
        "limits": {
            "max_body_bytes_default": clamp_int(
                limits.get("max_body_bytes_default"), 0, GIB, d["limits"]["max_body_bytes_default"]
            ),
            "client_read_seconds": clamp_int(limits.get("client_read_seconds"), 1, 600, d["limits"]["client_read_seconds"]),
        },
        "forwarded_trust": {
            "trusted_proxy_cidrs": _normalize_cidr_list(ft.get("trusted_proxy_cidrs")),
            "strip_untrusted_forwarded": _default_true(ft.get("strip_untrusted_forwarded")),
        },
    }


def _normalize_browser(p: Dict[str, Any]) -> Dict[str, Any]:
    d = DEFAULT_POLICY["browser"]
    enf = _d(p.get("enforcement"))
    hsts = _d(p.get("hsts"))
    csp = _d(p.get("csp"))
    cookies = _d(p.get("cookie_flags"))

    return {
        "enabled": _default_true(p.get("enabled")),
        "enforcement": {"mode": normalize_choice(enf.get("mode"), BROWSER_MODES, "report-only")},
        "headers_preset": normalize_choice(p.get("headers_preset"), HEADER_PRESETS, "balanced"),
        "hsts": {
            "enabled": _normalize_hsts_enabled(hsts.get("enabled")),
            "max_age": clamp_int(hsts.get("max_age"), 0, 63072000, d["hsts"]["max_age"]),
            "include_subdomains": _default_false(hsts.get("include_subdomains")),
            "preload": _default_false(hsts.get("preload")),
        },
        "csp": {
            "mode": normalize_choice(csp.get("mode"), BROWSER_MODES, d["csp"]["mode"]),
            "directives": _normalize_directives(csp.get("directives")),
            "report_endpoint": _text(csp.get("report_endpoint"), d["csp"]["report_endpoint"]),
        },
        "cookie_flags": {
            "enabled": _default_false(cookies.get("enabled")),
            "force_secure": _default_true(cookies.get("force_secure")),
            "force_httponly": _default_true(cookies.get("force_httponly")),
            "samesite": normalize_choice(cookies.get("samesite"), SAMESITE_VALUES, "lax").capitalize(),
            "exceptions": _str_list(cookies.get("exceptions"), MAX_COOKIE_EXCEPTIONS),
        },
    }


def _normalize_outbound(p: Dict[str, Any]) -> Dict[str, Any]:
    d = DEFAULT_POLICY["outbound"]
    enf = _d(p.get("enforcement"))
    schemes = _d(p.get("schemes"))
    redirects = _d(p.get("redirects"))
    timeouts = _d(p.get("timeouts"))

    return {
        "enabled": _default_true(p.get("enabled")),
        "enforcement": {"mode": normalize_choice(enf.get("mode"), OUTBOUND_MODES, "monitor")},
        "capability": normalize_choice(p.get("capability"), OUTBOUND_CAPABILITIES, "auto"),
        "schemes": {
            "allow_https": _default_true(schemes.get("allow_https")),
            "allow_http": _default_false(schemes.get("allow_http")),
        },
        "allowlist": _str_list(p.get("allowlist"), MAX_OUTBOUND_ALLOWLIST),
        "block_private_ranges": _default_true(p.get("block_private_ranges")),
        "redirects": {
            "allow": _default_true(redirects.get("allow")),
            "max": clamp_int(redirects.get("max"), 0, 20, d["redirects"]["max"]),
        },
        "dns_pinning": _default_true(p.get("dns_pinning")),
        "timeouts": {
            "connect_ms": clamp_int(timeouts.get("connect_ms"), 100, 60000, d["timeouts"]["connect_ms"]),
            "read_ms": clamp_int(timeouts.get("read_ms"), 100, 600000, d["timeouts"]["read_ms"]),
        },
        "max_response_bytes": clamp_int(p.get("max_response_bytes"), 0, GIB, d["max_response_bytes"]),
    }


def normalize_policy(value: Any) -> Dict[str, Any]:
    """Acepta dict, JSON str/bytes o None. Siempre regresa un documento completo."""
    p = _parse(value)
    return {
        "mode": normalize_choice(p.get("mode"), INBOUND_MODES, DEFAULT_POLICY["mode"]),
        "inbound": _normalize_inbound(_d(p.get("inbound"))),
        "browser": _normalize_browser(_d(p.get("browser"))),
        "outbound": _normalize_outbound(_d(p.get("outbound"))),
    }
