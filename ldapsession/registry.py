"""
One session per server URI.

A :py:class:`SessionRegistry` is an explicit cache of
:py:class:`~ldapsession.session.DirectorySession` objects keyed by URI.  Hold
one per application and hand it to whatever needs a directory session.
"""

import logging
import threading
from collections.abc import MutableMapping
from typing import Any

from .conf import get_server_config
from .session import DirectorySession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Hand out a single shared session per URI.

    The first :py:meth:`get` for a URI connects and binds a new session using
    the options given; later calls for that URI return the same session and
    ignore their options.

    Keyword Args:
        storage: where sessions are kept; any mutable mapping of URI to session
        session_class: the class used to build new sessions

    """

    def __init__(
        self,
        storage: MutableMapping[str, DirectorySession] | None = None,
        session_class: type[DirectorySession] = DirectorySession,
    ) -> None:
        self._sessions: MutableMapping[str, DirectorySession] = (
            storage if storage is not None else {}
        )
        self.session_class = session_class
        #: Guards ``_sessions`` and ``_uri_locks``; never held across network I/O
        self._lock = threading.Lock()
        #: One lock per URI, held while that URI's session connects and binds
        self._uri_locks: dict[str, threading.Lock] = {}

    def _open_session(self, uri: str) -> DirectorySession | None:
        with self._lock:
            session = self._sessions.get(uri)
        if session is not None and not session.closed:
            return session
        return None

    def _uri_lock(self, uri: str) -> threading.Lock:
        with self._lock:
            return self._uri_locks.setdefault(uri, threading.Lock())

    def get(self, uri: str, options: Any = None) -> DirectorySession:
        """
        Return the session for ``uri``, creating and binding it on first use.

        Only callers asking for the same URI wait while its session connects;
        other URIs are served meanwhile.

        Args:
            uri: the LDAP URI of the server

        Keyword Args:
            options: session options; only used when the session is created

        Raises:
            DirectoryConnectionError: we could not connect to ``uri``
            BindError: the server rejected the configured credentials

        Returns:
            The shared session for ``uri``.

        """
        session = self._open_session(uri)
        if session is None:
            with self._uri_lock(uri):
                session = self._open_session(uri)
                if session is None:
                    session = self.session_class(uri, options)
                    with self._lock:
                        self._sessions[uri] = session
                    logger.debug("ldapsession.registry.created uri=%s", uri)
                    return session
        if options:
            logger.debug("ldapsession.registry.options-ignored uri=%s", uri)
        return session

    def get_by_name(self, name: str) -> DirectorySession:
        """
        Return the session for the server named ``name`` in
        ``settings.LDAP_SERVERS``.

        Raises:
            ImproperlyConfigured: ``name`` is not configured

        """
        uri, options = get_server_config(name)
        return self.get(uri, options)

    def has_session(self, uri: str) -> bool:
        return uri in self._sessions

    def release(self, uri: str) -> None:
        """
        Close the session for ``uri`` and forget it.  Releasing an unknown URI
        does nothing.
        """
        with self._lock:
            session = self._sessions.pop(uri, None)
        if session is not None:
            session.close()
            logger.debug("ldapsession.registry.released uri=%s", uri)

    def close(self) -> None:
        """
        Close and forget every session.
        """
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __contains__(self, uri: object) -> bool:
        return uri in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
