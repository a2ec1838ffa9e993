"""Config loading for Periscope.

Reads `.periscope/config.yaml` (or `~/.periscope/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. PERISCOPE_CONFIG environment variable (if set)
  3. `.periscope/config.yaml` (working directory — for development)
  4. `~/.periscope/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  PERISCOPE_PORT — overrides proxy.port (takes precedence over config file value)
  PERISCOPE_CONFIG — sets an explicit config file path to try first
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional

import yaml

from app.constants import (
    DEFAULT_PROXY_ENDPOINT,
    DEFAULT_SEARCH_ENGINE,
    FETCH_TIMEOUT_S,
    MAX_REDIRECTS,
    MAX_RESPONSE_BODY_BYTES,
)
from app.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".periscope/config.yaml",
    os.path.expanduser("~/.periscope/config.yaml"),
]

DEFAULT_CORS_ORIGINS: list[str] = [
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class ProxyConfig:
    """Proxy binding and routing configuration.

    endpoint:     Path (or absolute URL) rewritten references are routed through.
    cors_origins: Browser-shell origins allowed to call the probe endpoint.
    """

    host: str = "127.0.0.1"
    port: int = 5000
    endpoint: str = DEFAULT_PROXY_ENDPOINT
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))


@dataclass
class FetchConfig:
    """Upstream fetch limits."""

    timeout_s: float = FETCH_TIMEOUT_S
    max_redirects: int = MAX_REDIRECTS
    max_body_bytes: int = MAX_RESPONSE_BODY_BYTES
    user_agent: Optional[str] = None  # overrides the default browser User-Agent


@dataclass
class SecurityConfig:
    """SSRF guard configuration.

    resolve_dns:             Resolve hostnames and validate every resolved address.
    pin_resolved_address:    Connect to the validated address instead of re-resolving.
    extra_blocked_hosts:     Additional exact hostnames (and their subdomains) to refuse.
    extra_rebinding_domains: Additional wildcard-DNS helper domains to refuse.
    """

    resolve_dns: bool = True
    pin_resolved_address: bool = True
    extra_blocked_hosts: list[str] = field(default_factory=list)
    extra_rebinding_domains: list[str] = field(default_factory=list)


@dataclass
class SearchConfig:
    """Search engine used for input that does not look like a URL."""

    engine: str = DEFAULT_SEARCH_ENGINE


@dataclass
class ProbeConfig:
    """Probe-mode policy."""

    html_only: bool = True


@dataclass
class Config:
    """Root configuration object populated from .periscope/config.yaml.

    All fields have safe defaults — Periscope can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    fetch: FetchConfig = field(default_factory=FetchConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On out-of-range fetch limits.
        """
        # ── Proxy ─────────────────────────────────────────────────────────────
        proxy_raw = raw.get("proxy") or {}
        proxy = ProxyConfig(
            host=proxy_raw.get("host", "127.0.0.1"),
            port=proxy_raw.get("port", 5000),
            endpoint=proxy_raw.get("endpoint", DEFAULT_PROXY_ENDPOINT),
            cors_origins=proxy_raw.get("cors_origins", list(DEFAULT_CORS_ORIGINS)),
        )

        # ── Fetch ─────────────────────────────────────────────────────────────
        fetch_raw = raw.get("fetch") or {}
        fetch = FetchConfig(
            timeout_s=fetch_raw.get("timeout_s", FETCH_TIMEOUT_S),
            max_redirects=fetch_raw.get("max_redirects", MAX_REDIRECTS),
            max_body_bytes=fetch_raw.get("max_body_bytes", MAX_RESPONSE_BODY_BYTES),
            user_agent=fetch_raw.get("user_agent"),
        )
        if fetch.timeout_s <= 0 or fetch.max_redirects < 0 or fetch.max_body_bytes <= 0:
            msg = (
                "CONFIG ERROR: fetch.timeout_s and fetch.max_body_bytes must be positive "
                "and fetch.max_redirects must not be negative."
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)

        # ── Security ──────────────────────────────────────────────────────────
        security_raw = raw.get("security") or {}
        security = SecurityConfig(
            resolve_dns=security_raw.get("resolve_dns", True),
            pin_resolved_address=security_raw.get("pin_resolved_address", True),
            extra_blocked_hosts=[
                h.lower() for h in security_raw.get("extra_blocked_hosts", [])
            ],
            extra_rebinding_domains=[
                d.lower() for d in security_raw.get("extra_rebinding_domains", [])
            ],
        )

        search_raw = raw.get("search") or {}
        probe_raw = raw.get("probe") or {}

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            proxy=proxy,
            fetch=fetch,
            security=security,
            search=SearchConfig(engine=search_raw.get("engine", DEFAULT_SEARCH_ENGINE)),
            probe=ProbeConfig(html_only=probe_raw.get("html_only", True)),
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate Periscope configuration.

    Search order:
      1. ``config_path`` argument (if provided)
      2. ``PERISCOPE_CONFIG`` environment variable (if set)
      3. ``.periscope/config.yaml``
      4. ``~/.periscope/config.yaml``

    If no file is found at any of these paths, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    After loading (or defaulting), ``PERISCOPE_PORT`` is applied as an override
    to ``config.proxy.port``.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid fetch limits, or invalid ``PERISCOPE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PERISCOPE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("No config file found — using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "Periscope refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: Periscope is configured to bind on 0.0.0.0 (all interfaces). "
            "Anyone who can reach the port can use it as an open proxy. "
            "Recommended: use proxy.host: '127.0.0.1' behind the browser shell."
        )

    if not config.security.resolve_dns:
        logger.warning(
            "SECURITY WARNING: security.resolve_dns is disabled — hostnames that "
            "resolve to private addresses will not be refused."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        endpoint=config.proxy.endpoint,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If PERISCOPE_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("PERISCOPE_PORT")
    if env_port is not None:
        try:
            config.proxy.port = int(env_port)
        except ValueError:
            msg = (
                f"CONFIG ERROR: PERISCOPE_PORT environment variable is not a valid "
                f"integer: '{env_port}'"
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)
