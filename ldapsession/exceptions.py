"""
Exceptions raised by directory sessions.

Every exception carries the directory path the failed operation targeted
(``path``), the LDAP result code the server answered with (``code``) and the
server's diagnostic message (``message``), whenever those are known.
"""

from typing import Any


class DirectoryError(Exception):
    """
    Base class for everything a :py:class:`~ldapsession.session.DirectorySession`
    raises.

    Args:
        msg: human readable description of the failure

    Keyword Args:
        path: the directory path the operation targeted
        code: the LDAP result code, if the server answered
        message: the server's diagnostic message, if any

    """

    def __init__(
        self,
        msg: str,
        path: str | None = None,
        code: int | None = None,
        message: str | None = None,
    ) -> None:
        super().__init__(msg)
        self.path = path
        self.code = code
        self.message = message

    def __reduce__(self) -> tuple[Any, ...]:
        return (self.__class__, (str(self), self.path, self.code, self.message))


class DirectoryConnectionError(DirectoryError):
    """
    We could not open a connection to the directory server.
    """


class BindError(DirectoryError):
    """
    The server rejected our bind.
    """


class TransportError(DirectoryError):
    """
    A request could not be dispatched, or the transport failed while we waited
    for its result.
    """


class ProtocolError(DirectoryError):
    """
    The server answered with a status other than success or busy.
    """


class BusyExceededError(ProtocolError):
    """
    The server kept reporting busy after our retry budget was spent.
    """


class NotFoundError(ProtocolError):
    """
    No entry exists at the requested path.
    """


class DeleteError(ProtocolError):
    """
    The final delete request for an entry failed.
    """


class MoveError(ProtocolError):
    """
    The rename request that moves an entry failed.
    """


class UpsertConflictError(ProtocolError):
    """
    An add/modify kept bouncing between "entry exists" and "entry is missing".
    """


class EntryExistsError(ProtocolError):
    """
    The server refused to create an entry because one already exists at the
    path.
    """
