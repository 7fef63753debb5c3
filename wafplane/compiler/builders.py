# wafplane/compiler/builders.py
"""
Render puro: (settings, reglas efectivas, politicas, fuentes geoip) -> archivos.

Mismo input -> mismos bytes. Nada de timestamps dentro de los archivos;
las membresias se ordenan antes de emitirse.
"""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from wafplane.compiler.ir import (
    Blank,
    Comment,
    ConfigFile,
    Node,
    Raw,
    block,
    directive,
    if_block,
    set_var,
)
from wafplane.compiler.render import alternation_pattern, quote_arg, render_file, split_tokens
from wafplane.core.enums import RuleAction
from wafplane.core.net import dedupe_sorted, network_covers, sanitize_cidr, sanitize_country_code
from wafplane.enrichment.geoip import GeoIpSources
from wafplane.services.settings_service import (
    DEFAULT_BOT_PATH_TOKENS,
    DEFAULT_BOT_UA_TOKENS,
    GlobalSettings,
)

MANAGED_BY = "Managed by wafplane. Changes are overwritten on every apply."

HTTP_TOP_CONF = "http_top.conf"
HTTP_CONF = "waf_http.conf"
GEOIP2_CONF = "waf_geoip2.conf"
SERVER_CONF = "waf_server.conf"
BOT_CONF = "waf_bot.conf"
DDOS_CONF = "waf_ddos.conf"
SQLI_CONF = "waf_sqli.conf"
REALIP_CONF = "waf_realip.conf"
POLICY_GLOBAL_CONF = "waf_policy_global.conf"
POLICY_APP_PREFIX = "waf_policy_app_"

REAL_IP_HEADER = "CF-Connecting-IP"


def policy_app_conf(app_id: int) -> str:
    return f"{POLICY_APP_PREFIX}{int(app_id)}.conf"


def is_managed_policy_file(name: str) -> bool:
    return name.startswith(POLICY_APP_PREFIX) and name.endswith(".conf")


@dataclass(frozen=True)
class RuleEntry:
    """Regla ya filtrada como efectiva: solo importa sujeto + accion."""
    subject: str
    action: str


@dataclass
class CompileInputs:
    settings: GlobalSettings
    ip_rules: Sequence[RuleEntry] = ()
    country_rules: Sequence[RuleEntry] = ()
    global_policy: Mapping[str, Any] = field(default_factory=dict)
    app_policies: Mapping[int, Mapping[str, Any]] = field(default_factory=dict)
    geoip: GeoIpSources = field(default_factory=GeoIpSources)
    trusted_ranges: Sequence[str] = ()
    config_dir: str = "/data/nginx/custom"
    sqli_lua_path: str = "/data/nginx/custom/waf_sqli.lua"


@dataclass
class ConfigArtifacts:
    files: Dict[str, str]
    reduced: bool = False
    # metadata: fuera del cuerpo de los archivos
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def digest(self) -> str:
        h = hashlib.sha256()
        for name in sorted(self.files):
            h.update(name.encode("utf-8"))
            h.update(b"\0")
            h.update(self.files[name].encode("utf-8"))
            h.update(b"\0")
        return h.hexdigest()


# -------------------------
# Membresias
# -------------------------

def ip_membership(rules: Sequence[RuleEntry]) -> Tuple[List[str], List[str]]:
    """
    (allow, deny) ordenados. Un deny cubierto por un allow (misma familia,
    red contenida) sale del mapa de deny.
    """
    allow = dedupe_sorted(sanitize_cidr(r.subject) for r in rules if r.action == RuleAction.ALLOW.value)
    deny_all = dedupe_sorted(sanitize_cidr(r.subject) for r in rules if r.action == RuleAction.DENY.value)
    deny = [d for d in deny_all if not any(d == a or network_covers(a, d) for a in allow)]
    return allow, deny


def country_membership(rules: Sequence[RuleEntry]) -> Tuple[List[str], List[str]]:
    allow = dedupe_sorted(sanitize_country_code(r.subject) for r in rules if r.action == RuleAction.ALLOW.value)
    allow_set = set(allow)
    deny = [
        c
        for c in dedupe_sorted(sanitize_country_code(r.subject) for r in rules if r.action == RuleAction.DENY.value)
        if c not in allow_set
    ]
    return allow, deny


def _geo_block(var: str, cidrs: Sequence[str]) -> Node:
    body: List[Node] = [directive("default", "0")]
    body.extend(directive(c, "1") for c in cidrs)
    return block("geo", Raw(f"${var}"), body=body)


def _map_block(source: str, target: str, entries: Sequence[Tuple[str, str]]) -> Node:
    body = [directive(quote_arg(k) if k == "" else k, Raw(v)) for k, v in entries]
    return block("map", Raw(f"${source}"), Raw(f"${target}"), body=body)


def _country_map(var: str, codes: Sequence[str]) -> Node:
    body: List[Node] = [directive("default", "0")]
    body.extend(directive(cc, "1") for cc in codes)
    return block("map", Raw("$waf_country"), Raw(f"${var}"), body=body)


def _include(config_dir: str, name: str) -> Node:
    return directive("include", os.path.join(config_dir, name))


# -------------------------
# Archivos
# -------------------------

def build_http_top(inp: CompileInputs) -> ConfigFile:
    return ConfigFile(
        HTTP_TOP_CONF,
        (
            Comment(MANAGED_BY),
            _include(inp.config_dir, HTTP_CONF),
        ),
    )


def _geo_flags(inp: CompileInputs, reduced: bool) -> Tuple[bool, bool]:
    use_mm = bool(inp.geoip.maxmind)
    # IP2Location es la fuente opcional que se descarta en el render reducido
    use_ip2 = bool(inp.geoip.ip2location) and not reduced
    return use_mm, use_ip2


def build_geoip2(inp: CompileInputs, reduced: bool) -> ConfigFile:
    use_mm, use_ip2 = _geo_flags(inp, reduced)
    nodes: List[Node] = [Comment(MANAGED_BY)]
    if not (use_mm or use_ip2):
        nodes.append(Comment("No GeoIP country database available."))
        return ConfigFile(GEOIP2_CONF, tuple(nodes))

    nodes.append(Blank())
    if use_mm:
        nodes.append(Comment("MaxMind GeoLite2 Country"))
        nodes.append(
            block("geoip2", inp.geoip.maxmind, body=[directive("$geoip2_country_code_mm", "country", "iso_code")])
        )
    if use_ip2:
        nodes.append(Comment("IP2Location Country (secondary source)"))
        nodes.append(
            block("geoip2", inp.geoip.ip2location, body=[directive("$geoip2_country_code_ip2", "country_short")])
        )
    return ConfigFile(GEOIP2_CONF, tuple(nodes))


def build_http(inp: CompileInputs, reduced: bool) -> ConfigFile:
    s = inp.settings
    use_mm, use_ip2 = _geo_flags(inp, reduced)
    ip_allow, ip_deny = ip_membership(inp.ip_rules)
    cc_allow, cc_deny = country_membership(inp.country_rules)

    nodes: List[Node] = [
        Comment(MANAGED_BY),
        Comment(f"Included in http {{}} via {HTTP_TOP_CONF}"),
        Blank(),
        _include(inp.config_dir, REALIP_CONF),
        Blank(),
    ]

    if use_mm or use_ip2:
        nodes.append(Comment("GeoIP2 country databases"))
        nodes.append(_include(inp.config_dir, GEOIP2_CONF))
        nodes.append(Blank())

    nodes.append(Comment("Country resolution (CDN header first, GeoIP2 fallback)"))
    if use_mm and use_ip2:
        nodes.append(
            _map_block("http_cf_ipcountry", "waf_country_mm", [("default", "$http_cf_ipcountry"), ("", "$geoip2_country_code_mm")])
        )
        nodes.append(
            _map_block("waf_country_mm", "waf_country", [("default", "$waf_country_mm"), ("", "$geoip2_country_code_ip2")])
        )
    elif use_mm or use_ip2:
        fallback = "$geoip2_country_code_mm" if use_mm else "$geoip2_country_code_ip2"
        nodes.append(_map_block("http_cf_ipcountry", "waf_country", [("default", "$http_cf_ipcountry"), ("", fallback)]))
    else:
        nodes.append(_map_block("http_cf_ipcountry", "waf_country", [("default", "$http_cf_ipcountry"), ("", '"-"')]))
    nodes.append(Blank())

    nodes.extend(
        [
            Comment("Rate limit zones (used by protected apps only)"),
            directive("limit_req_zone", Raw("$binary_remote_addr"), "zone=waf_req:10m", f"rate={s.ddos_rate_rps}r/s"),
            directive("limit_conn_zone", Raw("$binary_remote_addr"), "zone=waf_conn:10m"),
            Blank(),
            Comment("IP allow/deny maps"),
            _geo_block("waf_allow", ip_allow),
            Blank(),
            _geo_block("waf_deny", ip_deny),
            Blank(),
            Comment("Country allow/deny maps"),
            _country_map("waf_country_allow", cc_allow),
            Blank(),
            _country_map("waf_country_deny", cc_deny),
        ]
    )
    return ConfigFile(HTTP_CONF, tuple(nodes))


def _gate(block_var: str, deny_var: str, allow_var: str) -> List[Node]:
    return [
        set_var(block_var, 0),
        if_block(f"${deny_var} = 1", set_var(block_var, 1)),
        if_block(f"${allow_var} = 1", set_var(block_var, 0)),
        if_block(f"${block_var} = 1", directive("return", 403)),
    ]


def build_server(inp: CompileInputs) -> ConfigFile:
    s = inp.settings
    nodes: List[Node] = [
        Comment(MANAGED_BY),
        Comment("Included inside protected server blocks."),
        Blank(),
        set_var("waf_auth_bypass", 1 if s.auth_bypass_enabled else 0),
        Blank(),
        # dos gates independientes: un allow solo anula el deny de su propia familia
        Comment("IP gate: IP allow overrides IP deny."),
    ]
    nodes.extend(_gate("waf_ip_block", "waf_deny", "waf_allow"))
    nodes.append(Blank())
    nodes.append(Comment("Country gate: country allow overrides country deny."))
    nodes.extend(_gate("waf_cc_block", "waf_country_deny", "waf_country_allow"))
    return ConfigFile(SERVER_CONF, tuple(nodes))


def build_bot(inp: CompileInputs) -> ConfigFile:
    s = inp.settings
    nodes: List[Node] = [Comment(MANAGED_BY)]
    if not s.bot_defense_enabled:
        nodes.append(Comment("Bot defense is disabled globally."))
        nodes.append(set_var("waf_bot_enabled", 0))
        return ConfigFile(BOT_CONF, tuple(nodes))

    ua_tokens = split_tokens(s.bot_ua_tokens if s.bot_ua_tokens is not None else DEFAULT_BOT_UA_TOKENS)
    path_tokens = split_tokens(s.bot_path_tokens if s.bot_path_tokens is not None else DEFAULT_BOT_PATH_TOKENS)

    nodes.append(Comment("Bot defense (enabled globally)"))
    nodes.append(set_var("waf_bot_enabled", 1))
    if ua_tokens:
        cond = f"$http_user_agent ~* {quote_arg(alternation_pattern(ua_tokens))}"
        nodes.append(if_block(cond, directive("return", 403)))
    if path_tokens:
        cond = f"$request_uri ~* {quote_arg(alternation_pattern(path_tokens))}"
        nodes.append(if_block(cond, directive("return", 404)))
    return ConfigFile(BOT_CONF, tuple(nodes))


def build_ddos(inp: CompileInputs) -> ConfigFile:
    s = inp.settings
    nodes: List[Node] = [Comment(MANAGED_BY)]
    if not s.ddos_enabled:
        nodes.append(Comment("DDoS shield is disabled globally."))
        nodes.append(set_var("waf_ddos_enabled", 0))
        return ConfigFile(DDOS_CONF, tuple(nodes))

    nodes.extend(
        [
            Comment("DDoS shield (enabled globally)"),
            set_var("waf_ddos_enabled", 1),
            directive("limit_conn", "waf_conn", s.ddos_conn_limit),
            directive("limit_req", "zone=waf_req", f"burst={s.ddos_burst}", "nodelay"),
        ]
    )
    return ConfigFile(DDOS_CONF, tuple(nodes))


def build_sqli(inp: CompileInputs) -> ConfigFile:
    s = inp.settings
    nodes: List[Node] = [Comment(MANAGED_BY)]
    if not s.sqli_enabled:
        nodes.append(Comment("SQL injection shield is disabled globally."))
        nodes.append(set_var("waf_sqli_enabled", 0))
        return ConfigFile(SQLI_CONF, tuple(nodes))

    nodes.extend(
        [
            Comment("SQL injection shield: scoring runs in the gateway hook"),
            set_var("waf_sqli_enabled", 1),
            set_var("waf_sqli_threshold", s.sqli_threshold),
            set_var("waf_sqli_max_body", s.sqli_max_body),
            set_var("waf_sqli_probe_min_score", s.sqli_probe_min_score),
            set_var("waf_sqli_probe_ban_score", s.sqli_probe_ban_score),
            set_var("waf_sqli_probe_window_sec", s.sqli_probe_window_sec),
            directive("access_by_lua_file", inp.sqli_lua_path),
        ]
    )
    return ConfigFile(SQLI_CONF, tuple(nodes))


def build_realip(inp: CompileInputs) -> ConfigFile:
    ranges = dedupe_sorted(sanitize_cidr(r) for r in inp.trusted_ranges)
    nodes: List[Node] = [Comment(MANAGED_BY)]
    if not ranges:
        nodes.append(Comment("No trusted CDN ranges configured."))
        return ConfigFile(REALIP_CONF, tuple(nodes))

    nodes.append(Comment("Trusted CDN edges"))
    nodes.extend(directive("set_real_ip_from", r) for r in ranges)
    nodes.append(directive("real_ip_header", REAL_IP_HEADER))
    return ConfigFile(REALIP_CONF, tuple(nodes))


# -------------------------
# Politicas (web threat controls)
# -------------------------

def _d(v: Any) -> Mapping[str, Any]:
    return v if isinstance(v, Mapping) else {}


def _csp_value(csp: Mapping[str, Any]) -> str:
    directives = _d(csp.get("directives"))
    parts = []
    for name in sorted(directives):
        sources = directives[name] or []
        parts.append(" ".join([name] + [str(x) for x in sources]))
    endpoint = csp.get("report_endpoint")
    if endpoint:
        parts.append(f"report-uri {endpoint}")
    return "; ".join(parts)


def _hsts_value(hsts: Mapping[str, Any]) -> str:
    value = f"max-age={int(hsts.get('max_age') or 0)}"
    if hsts.get("include_subdomains"):
        value += "; includeSubDomains"
    if hsts.get("preload"):
        value += "; preload"
    return value


PRESET_HEADERS: Dict[str, Tuple[Tuple[str, str], ...]] = {
    "balanced": (
        ("Referrer-Policy", "strict-origin-when-cross-origin"),
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "SAMEORIGIN"),
    ),
    "strict": (
        ("Cross-Origin-Opener-Policy", "same-origin"),
        ("Permissions-Policy", "camera=(), geolocation=(), microphone=()"),
        ("Referrer-Policy", "no-referrer"),
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
    ),
    "custom": (),
}


def _inbound_nodes(inbound: Mapping[str, Any]) -> List[Node]:
    enforcement = _d(inbound.get("enforcement"))
    mode = str(enforcement.get("mode") or "off") if inbound.get("enabled") else "off"
    nodes: List[Node] = [Comment("Inbound"), set_var("waf_inbound_mode", mode)]
    if mode == "off":
        return nodes

    status = int(enforcement.get("reject_status") or 400)
    framing = _d(inbound.get("framing"))
    methods = _d(inbound.get("methods"))
    limits = _d(inbound.get("limits"))
    allowed = [str(m) for m in (methods.get("allowed") or [])]

    nodes.extend(
        [
            set_var("waf_inbound_reject_status", status),
            set_var("waf_max_request_line_bytes", int(framing.get("max_request_line_bytes") or 0)),
            set_var("waf_max_header_line_bytes", int(framing.get("max_header_line_bytes") or 0)),
            set_var("waf_max_headers_bytes", int(framing.get("max_headers_bytes") or 0)),
            set_var("waf_allowed_methods", ",".join(allowed)),
            directive("client_max_body_size", int(limits.get("max_body_bytes_default") or 0)),
            directive("client_body_timeout", f"{int(limits.get('client_read_seconds') or 15)}s"),
        ]
    )
    if mode == "enforce" and allowed:
        cond = f"$request_method !~ {quote_arg('^(' + '|'.join(allowed) + ')$')}"
        nodes.append(if_block(cond, directive("return", status)))
    return nodes


def _browser_nodes(browser: Mapping[str, Any]) -> List[Node]:
    mode = str(_d(browser.get("enforcement")).get("mode") or "off") if browser.get("enabled") else "off"
    nodes: List[Node] = [Comment("Browser"), set_var("waf_browser_mode", mode)]
    if mode == "off":
        return nodes

    preset = str(browser.get("headers_preset") or "custom")
    for name, value in PRESET_HEADERS.get(preset, ()):
        nodes.append(directive("add_header", name, value, "always"))

    hsts = _d(browser.get("hsts"))
    # "auto": los browsers ignoran HSTS recibido por http plano
    if hsts.get("enabled") in (True, "auto"):
        nodes.append(directive("add_header", "Strict-Transport-Security", _hsts_value(hsts), "always"))

    csp = _d(browser.get("csp"))
    csp_mode = str(csp.get("mode") or "off")
    if csp_mode != "off":
        header = "Content-Security-Policy" if csp_mode == "enforce" else "Content-Security-Policy-Report-Only"
        nodes.append(directive("add_header", header, _csp_value(csp), "always"))

    cookies = _d(browser.get("cookie_flags"))
    if cookies.get("enabled"):
        for name in sorted(str(x) for x in (cookies.get("exceptions") or [])):
            nodes.append(directive("proxy_cookie_flags", name, "nosecure", "nohttponly", "nosamesite"))
        flags: List[str] = []
        if cookies.get("force_secure"):
            flags.append("secure")
        if cookies.get("force_httponly"):
            flags.append("httponly")
        flags.append(f"samesite={str(cookies.get('samesite') or 'Lax').lower()}")
        nodes.append(directive("proxy_cookie_flags", "~", *flags))
    return nodes


def _outbound_nodes(outbound: Mapping[str, Any]) -> List[Node]:
    mode = str(_d(outbound.get("enforcement")).get("mode") or "off") if outbound.get("enabled") else "off"
    nodes: List[Node] = [Comment("Outbound"), set_var("waf_outbound_mode", mode)]
    if mode == "off":
        return nodes

    schemes = _d(outbound.get("schemes"))
    redirects = _d(outbound.get("redirects"))
    timeouts = _d(outbound.get("timeouts"))
    allowlist = sorted(str(x) for x in (outbound.get("allowlist") or []))
    nodes.extend(
        [
            set_var("waf_outbound_capability", str(outbound.get("capability") or "auto")),
            set_var("waf_outbound_allow_http", 1 if schemes.get("allow_http") else 0),
            set_var("waf_outbound_allow_https", 1 if schemes.get("allow_https") else 0),
            set_var("waf_outbound_allowlist", ",".join(allowlist)),
            set_var("waf_outbound_block_private", 1 if outbound.get("block_private_ranges") else 0),
            set_var("waf_outbound_redirects", int(redirects.get("max") or 0) if redirects.get("allow") else 0),
            set_var("waf_outbound_dns_pinning", 1 if outbound.get("dns_pinning") else 0),
            set_var("waf_outbound_connect_ms", int(timeouts.get("connect_ms") or 0)),
            set_var("waf_outbound_read_ms", int(timeouts.get("read_ms") or 0)),
            set_var("waf_outbound_max_response_bytes", int(outbound.get("max_response_bytes") or 0)),
        ]
    )
    return nodes


def build_policy(name: str, label: str, policy: Mapping[str, Any]) -> ConfigFile:
    nodes: List[Node] = [
        Comment(MANAGED_BY),
        Comment(f"Web threat controls: {label}"),
        Blank(),
        set_var("waf_policy_mode", str(policy.get("mode") or "monitor")),
        Blank(),
    ]
    nodes.extend(_inbound_nodes(_d(policy.get("inbound"))))
    nodes.append(Blank())
    nodes.extend(_browser_nodes(_d(policy.get("browser"))))
    nodes.append(Blank())
    nodes.extend(_outbound_nodes(_d(policy.get("outbound"))))
    return ConfigFile(name, tuple(nodes))


# -------------------------
# Entry point
# -------------------------

def compile_artifacts(
    inputs: CompileInputs,
    *,
    reduced: bool = False,
    meta: Optional[Dict[str, Any]] = None,
) -> ConfigArtifacts:
    files: List[ConfigFile] = [
        build_http_top(inputs),
        build_http(inputs, reduced),
        build_geoip2(inputs, reduced),
        build_server(inputs),
        build_bot(inputs),
        build_ddos(inputs),
        build_sqli(inputs),
        build_realip(inputs),
        build_policy(POLICY_GLOBAL_CONF, "global", inputs.global_policy),
    ]
    for app_id in sorted(inputs.app_policies):
        files.append(build_policy(policy_app_conf(app_id), f"app {int(app_id)}", inputs.app_policies[app_id]))

    rendered = {f.name: render_file(f) for f in files}
    return ConfigArtifacts(files=dict(sorted(rendered.items())), reduced=reduced, meta=dict(meta or {}))
