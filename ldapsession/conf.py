"""
Named server configuration from Django settings.

Applications that run under Django can describe their directory servers once
in ``settings.LDAP_SERVERS``::

    LDAP_SERVERS = {
        "default": {
            "url": "ldaps://ldap.example.com",
            "user": "cn=admin,dc=example,dc=com",
            "password": "secret",
            "max_busy_retries": 5,
            "busy_wait_interval_ms": 250,
            "tls_verify": "always",
        },
    }

and then ask a :py:class:`~ldapsession.registry.SessionRegistry` for a session
by name.  Every key other than ``url`` is a session option.
"""

from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


def get_server_config(name: str) -> tuple[str, dict[str, Any]]:
    """
    Look up ``name`` in ``settings.LDAP_SERVERS``.

    Args:
        name: the key into ``settings.LDAP_SERVERS``

    Raises:
        ImproperlyConfigured: the setting, the server or its ``url`` is missing

    Returns:
        A ``(url, options)`` tuple.

    """
    try:
        servers = settings.LDAP_SERVERS
    except AttributeError as e:
        msg = "settings.LDAP_SERVERS does not exist!"
        raise ImproperlyConfigured(msg) from e
    try:
        config = dict(servers[name])
    except KeyError as e:
        msg = f"settings.LDAP_SERVERS has no key '{name}'"
        raise ImproperlyConfigured(msg) from e
    try:
        url = config.pop("url")
    except KeyError as e:
        msg = f"settings.LDAP_SERVERS['{name}'] has no 'url' key"
        raise ImproperlyConfigured(msg) from e
    return url, config
