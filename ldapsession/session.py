"""
Directory sessions.

A :py:class:`DirectorySession` owns one bound python-ldap connection and
exposes the operations callers need: ``search``, ``list``, ``read``, ``add``,
``modify``, ``delete`` and ``move``.

Every request goes through the same busy-retry loop: when the server answers
``BUSY`` we sleep and try again, up to the session's retry budget; any other
non-success status fails the call at once.

``add`` and ``modify`` together form an upsert.  Callers never need to know
whether the entry exists: ``add`` on an existing entry reconciles it with a
modify, and ``modify`` on a missing entry creates it.
"""

import enum
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from itertools import chain
from typing import Any

from ldap.controls.readentry import PostReadControl
from ldap_filter import Filter

from ldapsession import ldap

from . import dn as dnutils
from .changes import Change, Modlist, as_changes
from .exceptions import (
    BindError,
    BusyExceededError,
    DeleteError,
    DirectoryConnectionError,
    EntryExistsError,
    MoveError,
    NotFoundError,
    ProtocolError,
    TransportError,
    UpsertConflictError,
)
from .options import SessionOptions
from .records import Record
from .typing import Result3

logger = logging.getLogger(__name__)

#: Project every user attribute.
ALL_ATTRIBUTES = ("*",)
#: Project no attributes at all; only the entry's DN comes back.
NO_ATTRIBUTES = ("1.1",)
#: The always-true filter.
MATCH_ALL = Filter.attribute("objectClass").present().to_string()

#: python-ldap errors that mean the transport failed, rather than the server
#: answering with a status.
TRANSPORT_ERRORS = (ldap.SERVER_DOWN, ldap.CONNECT_ERROR, ldap.TIMEOUT)  # type: ignore[attr-defined]
#: Statuses that get a more specific error than ProtocolError.
STATUS_ERRORS = {
    ldap.NO_SUCH_OBJECT: NotFoundError,  # type: ignore[attr-defined]
    ldap.ALREADY_EXISTS: EntryExistsError,  # type: ignore[attr-defined]
}
#: How ``result3`` decodes the post-read control we attach to writes.
POST_READ_CONTROLS = {PostReadControl.controlType: PostReadControl}
#: How many times an upsert may switch between create and reconcile.
MAX_UPSERT_HOPS = 2


class UpsertState(enum.Enum):
    PROBE = "probe"
    CREATE = "create"
    RECONCILE = "reconcile"


def error_details(exc: Exception) -> tuple[int | None, str]:
    """
    Extract the result code and diagnostic message from a python-ldap error.

    Args:
        exc: the exception python-ldap raised

    Returns:
        A ``(code, message)`` tuple; ``code`` is ``None`` when python-ldap did
        not report one.

    """
    info = exc.args[0] if exc.args and isinstance(exc.args[0], dict) else {}
    code = info.get("result", getattr(exc, "errnum", None))
    parts = [info.get("desc"), info.get("info")]
    message = ": ".join(str(p).strip() for p in parts if p) or str(exc)
    return code, message


def filter_string(searchfilter: "str | Filter") -> str:
    """
    Accept either a filter string or an ``ldap_filter`` filter object.
    """
    if isinstance(searchfilter, str):
        return searchfilter
    return searchfilter.to_string()


class DirectorySession:
    """
    One bound connection to a directory server.

    The connection is opened and bound in the constructor; if either step fails
    the session is never created.  Retry tuning and credentials are fixed at
    construction.

    A session serializes its operations with a lock, so it may be shared by
    threads, but only one request is ever in flight on it.  Use one
    :py:class:`~ldapsession.registry.SessionRegistry` per application to share
    a session per URI.

    Args:
        uri: the LDAP URI of the server, e.g. ``ldaps://ldap.example.com``

    Keyword Args:
        options: session options, either a mapping (see
            :py:mod:`ldapsession.options`) or a parsed :py:class:`SessionOptions`

    Raises:
        DirectoryConnectionError: we could not connect to ``uri``
        BindError: the server rejected our credentials

    """

    def __init__(
        self, uri: str, options: Mapping[Any, Any] | SessionOptions | None = None
    ) -> None:
        self.logger = logger
        self._uri = uri
        if isinstance(options, SessionOptions):
            self._options = options
        else:
            self._options = SessionOptions.from_mapping(options)
        self._lock = threading.RLock()
        self._closed = False
        self._connection = self._connect()

    # -----------------------
    # Connection lifecycle
    # -----------------------

    def _connect(self) -> "ldap.ldapobject.LDAPObject":  # type: ignore[name-defined]
        """
        Initialize, configure and bind a new connection.
        """
        self.logger.debug("ldapsession.session.connect uri=%s", self._uri)
        try:
            connection = ldap.initialize(self._uri)  # type: ignore[attr-defined]
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            _, message = error_details(e)
            msg = f"Could not connect to LDAP server: {self._uri}"
            raise DirectoryConnectionError(msg, message=message) from e
        try:
            connection.set_option(ldap.OPT_PROTOCOL_VERSION, ldap.VERSION3)  # type: ignore[attr-defined]
            for option, value in chain(
                self._options.connection_settings(),
                self._options.transport_options.items(),
            ):
                connection.set_option(option, value)
            if self._options.use_starttls:
                connection.start_tls_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            code, message = error_details(e)
            msg = f"Could not connect to LDAP server: {self._uri}"
            raise DirectoryConnectionError(msg, code=code, message=message) from e
        try:
            connection.simple_bind_s(
                self._options.bind_identity, self._options.bind_secret
            )
        except TRANSPORT_ERRORS as e:
            code, message = error_details(e)
            msg = f"Could not connect to LDAP server: {self._uri}"
            raise DirectoryConnectionError(msg, code=code, message=message) from e
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            code, message = error_details(e)
            msg = f"Could not bind to LDAP server: {self._uri}"
            raise BindError(
                msg, path=self._options.bind_identity, code=code, message=message
            ) from e
        self.logger.debug(
            "ldapsession.session.bound uri=%s identity=%s",
            self._uri,
            self._options.bind_identity or "anonymous",
        )
        return connection

    @property
    def uri(self) -> str:
        return self._uri

    @property
    def options(self) -> SessionOptions:
        return self._options

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connection(self) -> "ldap.ldapobject.LDAPObject":  # type: ignore[name-defined]
        """
        The underlying python-ldap connection.

        Raises:
            TransportError: the session has been closed

        """
        if self._closed:
            msg = f"LDAP session is closed: {self._uri}"
            raise TransportError(msg)
        return self._connection

    def close(self) -> None:
        """
        Unbind and close the connection.  Closing twice is harmless; any other
        operation on a closed session raises :py:exc:`TransportError`.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                self._connection.unbind_s()
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                self.logger.warning(
                    "ldapsession.session.unbind.failed uri=%s error=%s",
                    self._uri,
                    error_details(e)[1],
                )
            self.logger.debug("ldapsession.session.closed uri=%s", self._uri)

    def __enter__(self) -> "DirectorySession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<DirectorySession uri={self._uri!r} {state}>"

    # -----------------------
    # The busy-retry loop
    # -----------------------

    def _call(
        self,
        action: str,
        path: str,
        dispatch: Callable[[], int],
        collect: Callable[[int], Result3],
        error_class: type[ProtocolError] | None = None,
    ) -> Result3:
        """
        Send a request and wait for its result, retrying while the server is
        busy.

        Args:
            action: what we are doing, for error messages ("add LDAP entry")
            path: the DN the request targets
            dispatch: sends the request and returns its message id
            collect: waits for the result of a message id

        Keyword Args:
            error_class: raise this for any non-success, non-busy status instead
                of the default status mapping

        Raises:
            TransportError: the request could not be sent, or the transport
                failed while we waited
            BusyExceededError: the server was still busy after our retry budget
                was spent
            ProtocolError: any other non-success status

        Returns:
            The ``result3`` 4-tuple of the successful attempt.

        """
        tries = self._options.max_busy_retries
        while True:
            try:
                msgid = dispatch()
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                code, message = error_details(e)
                msg = f"Could not {action}: {path}"
                raise TransportError(msg, path=path, code=code, message=message) from e
            try:
                return collect(msgid)
            except ldap.BUSY as e:  # type: ignore[attr-defined]
                code, message = error_details(e)
                if tries <= 0:
                    msg = f"Could not {action}: {path} (LDAP_BUSY)"
                    raise BusyExceededError(
                        msg, path=path, code=code, message=message
                    ) from e
                tries -= 1
                self.logger.debug(
                    "ldapsession.session.busy action=%s dn=%s tries_left=%d",
                    action,
                    path,
                    tries,
                )
                time.sleep(self._options.busy_wait_seconds)
            except TRANSPORT_ERRORS as e:
                code, message = error_details(e)
                msg = f"Could not {action}: {path}"
                raise TransportError(msg, path=path, code=code, message=message) from e
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                code, message = error_details(e)
                cls = error_class or STATUS_ERRORS.get(type(e), ProtocolError)
                msg = f"Could not {action}: {path} ({code}) {message}"
                raise cls(msg, path=path, code=code, message=message) from e

    # -----------------------
    # Read operations
    # -----------------------

    def _search(
        self,
        action: str,
        base: str,
        scope: int,
        searchfilter: "str | Filter",
        attributes: Sequence[str] | None,
    ) -> Iterator[Record]:
        filterstr = filter_string(searchfilter)
        attrlist = list(attributes) if attributes else list(ALL_ATTRIBUTES)
        with self._lock:
            _, rdata, _, _ = self._call(
                action,
                base,
                lambda: self.connection.search_ext(base, scope, filterstr, attrlist),
                lambda msgid: self.connection.result3(msgid),
            )
        for entry_dn, attrs in rdata or []:
            # Referrals come back as (None, [urls]); we do not chase them
            if not isinstance(attrs, dict):
                self.logger.debug(
                    "ldapsession.session.search.skip-referral base=%s", base
                )
                continue
            yield Record.from_result(entry_dn, attrs)

    def search(
        self,
        base: str,
        searchfilter: "str | Filter" = MATCH_ALL,
        attributes: Sequence[str] | None = ALL_ATTRIBUTES,
    ) -> Iterator[Record]:
        """
        Search the whole subtree below ``base``.

        The result is a single-pass generator: nothing is sent until you start
        iterating, and iterating it again yields nothing.  A busy server makes
        us rerun the whole search; no partial results are ever yielded twice.

        Args:
            base: the DN to search from
            searchfilter: a filter string or an ``ldap_filter`` filter
            attributes: the attributes to return; ``["*"]`` means all

        Raises:
            TransportError: the search could not be sent
            BusyExceededError: the server stayed busy
            ProtocolError: the search failed

        Returns:
            A generator of :py:class:`~ldapsession.records.Record`.

        """
        return self._search(
            "search LDAP server",
            base,
            ldap.SCOPE_SUBTREE,  # type: ignore[attr-defined]
            searchfilter,
            attributes,
        )

    def list(
        self,
        base: str,
        searchfilter: "str | Filter" = MATCH_ALL,
        attributes: Sequence[str] | None = ALL_ATTRIBUTES,
    ) -> Iterator[Record]:
        """
        Like :py:meth:`search`, but only returns the immediate children of
        ``base``.
        """
        return self._search(
            "list LDAP server",
            base,
            ldap.SCOPE_ONELEVEL,  # type: ignore[attr-defined]
            searchfilter,
            attributes,
        )

    def read(self, path: str, attributes: Sequence[str] | None = ALL_ATTRIBUTES) -> Record:
        """
        Read the single entry at ``path``.

        Raises:
            NotFoundError: there is no entry at ``path``
            TransportError: the read could not be sent
            BusyExceededError: the server stayed busy
            ProtocolError: the read failed

        """
        records = self._search(
            "read LDAP entry",
            path,
            ldap.SCOPE_BASE,  # type: ignore[attr-defined]
            MATCH_ALL,
            attributes,
        )
        record = next(records, None)
        if record is None:
            msg = f"Could not find LDAP entry: {path}"
            raise NotFoundError(msg, path=path)
        return record

    # -----------------------
    # Write operations
    # -----------------------

    def _post_read_control(self) -> PostReadControl:
        return PostReadControl(criticality=True, attrList=list(ALL_ATTRIBUTES))

    def _write(self, action: str, path: str, dispatch: Callable[[], int]) -> Record:
        """
        Run a write that carries a post-read control and build a record from
        the entry state the server echoes back.
        """
        _, _, _, serverctrls = self._call(
            action,
            path,
            dispatch,
            lambda msgid: self.connection.result3(
                msgid, resp_ctrl_classes=POST_READ_CONTROLS
            ),
        )
        for control in serverctrls or []:
            if control.controlType == PostReadControl.controlType and getattr(
                control, "entry", None
            ) is not None:
                if not getattr(control, "dn", None):
                    control.dn = path
                return Record.from_post_read(control)
        # Some servers accept the control but send nothing back
        self.logger.warning("ldapsession.session.post-read.missing dn=%s", path)
        return self.read(path)

    def _create(self, path: str, changes: Sequence[Change]) -> Record:
        modlist = Modlist(changes).add()
        return self._write(
            "add LDAP entry",
            path,
            lambda: self.connection.add_ext(
                path, modlist, serverctrls=[self._post_read_control()]
            ),
        )

    def _reconcile(self, path: str, changes: Sequence[Change]) -> Record:
        modlist = Modlist(changes).modify()
        if not modlist:
            self.logger.debug("ldapsession.session.modify.no-changes dn=%s", path)
            return self.read(path)
        return self._write(
            "modify LDAP entry",
            path,
            lambda: self.connection.modify_ext(
                path, modlist, serverctrls=[self._post_read_control()]
            ),
        )

    def _upsert(
        self, path: str, changes: Sequence[Change], state: UpsertState
    ) -> Record:
        """
        Drive the upsert state machine until the entry is written.

        ``PROBE`` reads the entry and moves to ``RECONCILE`` if it exists or to
        ``CREATE`` if it does not.  ``CREATE`` falls over to ``RECONCILE`` when
        the server says the entry already exists, and ``RECONCILE`` falls over
        to ``CREATE`` when the server says it is missing.

        Raises:
            UpsertConflictError: we switched between create and reconcile more
                than :py:data:`MAX_UPSERT_HOPS` times

        """
        hops = 0
        with self._lock:
            while True:
                if state is UpsertState.PROBE:
                    try:
                        self.read(path, NO_ATTRIBUTES)
                    except NotFoundError:
                        next_state = UpsertState.CREATE
                    else:
                        next_state = UpsertState.RECONCILE
                    self.logger.debug(
                        "ldapsession.upsert.transition dn=%s from=%s to=%s",
                        path,
                        state.value,
                        next_state.value,
                    )
                    state = next_state
                    continue
                try:
                    if state is UpsertState.CREATE:
                        return self._create(path, changes)
                    return self._reconcile(path, changes)
                except EntryExistsError:
                    if state is not UpsertState.CREATE:
                        raise
                    next_state = UpsertState.RECONCILE
                except NotFoundError:
                    if state is not UpsertState.RECONCILE:
                        raise
                    next_state = UpsertState.CREATE
                hops += 1
                if hops > MAX_UPSERT_HOPS:
                    msg = (
                        f"Could not write LDAP entry: {path} (entry keeps "
                        "appearing and disappearing)"
                    )
                    raise UpsertConflictError(msg, path=path)
                self.logger.warning(
                    "ldapsession.upsert.transition dn=%s from=%s to=%s",
                    path,
                    state.value,
                    next_state.value,
                )
                state = next_state

    def add(self, path: str, changes: Mapping[str, Any] | Iterable[Change]) -> Record:
        """
        Create the entry at ``path``, or reconcile it if it already exists.

        Args:
            path: the DN of the entry
            changes: either a mapping of attribute to values (prefix an
                attribute with ``-`` to drop it) or a list of
                :py:class:`~ldapsession.changes.Change`

        Raises:
            TransportError: a request could not be sent
            BusyExceededError: the server stayed busy
            UpsertConflictError: the entry kept appearing and disappearing
            ProtocolError: the server rejected the write

        Returns:
            The entry as the server stored it.

        """
        return self._upsert(path, as_changes(changes), UpsertState.PROBE)

    def modify(
        self, path: str, changes: Mapping[str, Any] | Iterable[Change]
    ) -> Record:
        """
        Replace or delete attributes of the entry at ``path``, creating it if it
        does not exist.

        Each attribute in ``changes`` is either replaced with the given values
        (a scalar becomes a single value) or, when prefixed with ``-`` or given
        no values, removed.  Attributes not named are left alone.

        Raises:
            TransportError: a request could not be sent
            BusyExceededError: the server stayed busy
            UpsertConflictError: the entry kept appearing and disappearing
            ProtocolError: the server rejected the write

        Returns:
            The entry as the server stored it.

        """
        return self._upsert(path, as_changes(changes), UpsertState.RECONCILE)

    def delete(self, path: str) -> None:
        """
        Delete the entry at ``path`` and everything below it.

        Children are deleted before their parent.  Deletion is not
        transactional: if something fails deep in the tree, whatever was
        already deleted stays deleted.

        Raises:
            DeleteError: the delete request for an entry failed
            TransportError: a request could not be sent
            BusyExceededError: the server stayed busy

        """
        with self._lock:
            try:
                children = [
                    record.dn
                    for record in self.list(path, MATCH_ALL, NO_ATTRIBUTES)
                ]
            except NotFoundError:
                children = []
            for child in children:
                self.delete(child)
            self._call(
                "delete LDAP entry",
                path,
                lambda: self.connection.delete_ext(path),
                lambda msgid: self.connection.result3(msgid),
                error_class=DeleteError,
            )
            self.logger.debug(
                "ldapsession.session.deleted dn=%s children=%d", path, len(children)
            )

    def move(self, path: str, new_parent: str) -> str:
        """
        Move the entry at ``path`` below ``new_parent``, keeping its RDN.

        This is a single rename request; it is not retried when the server is
        busy.

        Args:
            path: the DN of the entry to move
            new_parent: the DN of its new parent

        Raises:
            MoveError: ``path`` is not a valid DN, or the rename failed

        Returns:
            The new DN of the entry.

        """
        try:
            rdn = dnutils.leaf(path)
        except ValueError as e:
            msg = f"Could not move LDAP entry: {path} ({e})"
            raise MoveError(msg, path=path) from e
        with self._lock:
            try:
                self.connection.rename_s(path, rdn, new_parent, delold=1)
            except ldap.LDAPError as e:  # type: ignore[attr-defined]
                code, message = error_details(e)
                msg = f"Could not move LDAP entry: {path} ({code}) {message}"
                raise MoveError(msg, path=path, code=code, message=message) from e
        new_path = dnutils.join(rdn, new_parent)
        self.logger.debug("ldapsession.session.moved dn=%s new_dn=%s", path, new_path)
        return new_path
