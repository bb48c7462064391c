"""
Session options.

A session is configured with a plain mapping.  A handful of keys are ours
(retry tuning and bind credentials), a handful describe how to set up the
connection (TLS, timeouts, referrals), and everything else is handed to
python-ldap's ``set_option`` unchanged.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from django.core.exceptions import ImproperlyConfigured

from ldapsession import ldap

#: How many times a busy status is retried before we give up.
DEFAULT_MAX_BUSY_RETRIES = 10
#: How long to sleep between busy retries, in milliseconds.
DEFAULT_BUSY_WAIT_INTERVAL_MS = 1000
#: Network timeout in seconds when ``timeout`` is not configured.
DEFAULT_TIMEOUT = 15.0

#: Keys consumed by the session itself.
PRIVATE_OPTIONS = frozenset(
    ("max_busy_retries", "busy_wait_interval_ms", "bind_identity", "bind_secret")
)
#: Keys describing how the connection is set up.
CONNECTION_OPTIONS = frozenset(
    (
        "use_starttls",
        "tls_verify",
        "tls_ca_certfile",
        "tls_certfile",
        "tls_keyfile",
        "timeout",
        "sizelimit",
        "follow_referrals",
    )
)
#: Aliases accepted for the bind credentials in server configuration.
OPTION_ALIASES = {"user": "bind_identity", "password": "bind_secret"}
TLS_VERIFY_CHOICES = ("never", "always")


def resolve_transport_option(key: Any) -> int:
    """
    Resolve a pass-through option key to a python-ldap option constant.

    Integer keys are returned as-is.  Strings name a constant with or without
    its ``OPT_`` prefix, in any case: ``"OPT_REFERRALS"``, ``"referrals"``.

    Raises:
        ImproperlyConfigured: ``key`` does not name a python-ldap option

    """
    if isinstance(key, int) and not isinstance(key, bool):
        return key
    if isinstance(key, str):
        name = key.upper()
        if not name.startswith("OPT_"):
            name = f"OPT_{name}"
        value = getattr(ldap, name, None)
        if isinstance(value, int):
            return value
    msg = f"Unknown LDAP option: {key!r}"
    raise ImproperlyConfigured(msg)


def _check_file(kind: str, filename: str) -> str:
    path = Path(filename)
    if not path.exists():
        msg = f"{kind} file does not exist: {filename}"
        raise OSError(msg)
    if not path.is_file():
        msg = f"{kind} file is not a file: {filename}"
        raise OSError(msg)
    return filename


@dataclass(frozen=True)
class SessionOptions:
    """
    The parsed, immutable configuration of a
    :py:class:`~ldapsession.session.DirectorySession`.

    Use :py:meth:`from_mapping` to build one from the options mapping a caller
    supplies.
    """

    #: Busy statuses retried before :py:exc:`~ldapsession.exceptions.BusyExceededError`
    max_busy_retries: int = DEFAULT_MAX_BUSY_RETRIES
    #: Sleep between busy retries, in milliseconds
    busy_wait_interval_ms: int = DEFAULT_BUSY_WAIT_INTERVAL_MS
    #: The DN we bind as; ``None`` means an anonymous bind
    bind_identity: str | None = None
    bind_secret: str | None = field(default=None, repr=False)
    use_starttls: bool = False
    tls_verify: str = "never"
    tls_ca_certfile: str | None = None
    tls_certfile: str | None = None
    tls_keyfile: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    sizelimit: int | None = None
    follow_referrals: bool = False
    #: python-ldap option constant to value, applied verbatim before bind
    transport_options: Mapping[int, Any] = field(
        default_factory=lambda: MappingProxyType({}), hash=False
    )

    @property
    def busy_wait_seconds(self) -> float:
        return self.busy_wait_interval_ms / 1000.0

    @classmethod
    def from_mapping(cls, options: Mapping[Any, Any] | None = None) -> "SessionOptions":
        """
        Parse an options mapping.

        Args:
            options: the caller's options

        Raises:
            ImproperlyConfigured: an option name or value is invalid
            OSError: a configured TLS file does not exist or is not a file

        Returns:
            A fully parsed :py:class:`SessionOptions`.

        """
        kwargs: dict[str, Any] = {}
        transport: dict[int, Any] = {}
        for raw_key, value in (options or {}).items():
            key = raw_key
            if isinstance(raw_key, str):
                key = OPTION_ALIASES.get(raw_key, raw_key)
            if key in PRIVATE_OPTIONS or key in CONNECTION_OPTIONS:
                kwargs[key] = value
            else:
                transport[resolve_transport_option(key)] = value

        max_busy_retries = max(
            int(kwargs.get("max_busy_retries", DEFAULT_MAX_BUSY_RETRIES)), 0
        )
        busy_wait_interval_ms = int(
            kwargs.get("busy_wait_interval_ms", DEFAULT_BUSY_WAIT_INTERVAL_MS)
        )
        if busy_wait_interval_ms <= 0:
            busy_wait_interval_ms = DEFAULT_BUSY_WAIT_INTERVAL_MS

        tls_verify = kwargs.get("tls_verify", "never")
        if tls_verify not in TLS_VERIFY_CHOICES:
            msg = f"Invalid tls_verify value: {tls_verify}"
            raise ImproperlyConfigured(msg)
        tls_files = {}
        for name, kind in (
            ("tls_ca_certfile", "CA Certificate"),
            ("tls_certfile", "TLS Certificate"),
            ("tls_keyfile", "TLS Key"),
        ):
            if filename := kwargs.get(name):
                tls_files[name] = _check_file(kind, filename)

        sizelimit = kwargs.get("sizelimit")
        return cls(
            max_busy_retries=max_busy_retries,
            busy_wait_interval_ms=busy_wait_interval_ms,
            bind_identity=kwargs.get("bind_identity") or None,
            bind_secret=kwargs.get("bind_secret") or None,
            use_starttls=bool(kwargs.get("use_starttls", False)),
            tls_verify=tls_verify,
            timeout=float(kwargs.get("timeout", DEFAULT_TIMEOUT)),
            sizelimit=int(sizelimit) if sizelimit else None,
            follow_referrals=bool(kwargs.get("follow_referrals", False)),
            transport_options=MappingProxyType(transport),
            **tls_files,
        )

    def connection_settings(self) -> list[tuple[int, Any]]:
        """
        Return the ``(option, value)`` pairs that set up the connection, in the
        order they must be applied, ahead of the pass-through options.
        """
        settings: list[tuple[int, Any]] = [
            (ldap.OPT_REFERRALS, 1 if self.follow_referrals else 0),  # type: ignore[attr-defined]
            (ldap.OPT_NETWORK_TIMEOUT, self.timeout),  # type: ignore[attr-defined]
        ]
        if self.sizelimit:
            settings.append((ldap.OPT_SIZELIMIT, self.sizelimit))  # type: ignore[attr-defined]
        if self.tls_verify == "always":
            settings.append((ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND))  # type: ignore[attr-defined]
        else:
            settings.append((ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_NEVER))  # type: ignore[attr-defined]
        if self.tls_ca_certfile:
            settings.append((ldap.OPT_X_TLS_CACERTFILE, self.tls_ca_certfile))  # type: ignore[attr-defined]
        if self.tls_certfile:
            settings.append((ldap.OPT_X_TLS_CERTFILE, self.tls_certfile))  # type: ignore[attr-defined]
        if self.tls_keyfile:
            settings.append((ldap.OPT_X_TLS_KEYFILE, self.tls_keyfile))  # type: ignore[attr-defined]
        # Must come last so the TLS settings above take effect
        settings.append((ldap.OPT_X_TLS_NEWCTX, 0))  # type: ignore[attr-defined]
        return settings
