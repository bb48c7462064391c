"""
Uniform record shape for directory entries.

A :py:class:`Record` is what every read and every acknowledged write hands
back: an ordered, read-only mapping of attribute name to a tuple of values,
plus the entry's distinguished name.
"""

from collections.abc import Iterable, Iterator, Mapping
from typing import Any

from .typing import InputValue


def _decode(value: Any) -> InputValue:
    """
    Turn a wire value into ``str`` when it is valid UTF-8; leave binary values
    (photos, certificates, GUIDs) as ``bytes``.
    """
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError:
            return value
    if isinstance(value, str):
        return value
    return str(value)


def _values(value: Any) -> tuple[InputValue, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        return (_decode(value),)
    return tuple(_decode(v) for v in value)


class Record(Mapping):
    """
    An immutable directory entry.

    Attribute order is the order in which the server (or the caller) supplied
    the attributes, and duplicate values are preserved.  Changing a record
    never changes the directory: build a new attribute mapping and call
    :py:meth:`~ldapsession.session.DirectorySession.modify` instead.

    Args:
        attributes: attribute name to values

    Keyword Args:
        dn: the distinguished name of the entry

    """

    __slots__ = ("_attributes", "_dn")

    def __init__(
        self, attributes: Mapping[str, Any] | None = None, dn: str | None = None
    ) -> None:
        self._dn = dn
        self._attributes: dict[str, tuple[InputValue, ...]] = {}
        for name, value in (attributes or {}).items():
            self._attributes[name] = _values(value)

    @classmethod
    def from_result(cls, dn: str | None, attrs: Mapping[str, Any]) -> "Record":
        """
        Build a record from one ``(dn, attrs)`` search result.

        Raises:
            ValueError: the result has no distinguished name

        """
        if not dn:
            msg = "Directory results must carry a distinguished name"
            raise ValueError(msg)
        return cls(attrs, dn=dn)

    @classmethod
    def from_post_read(cls, control: Any) -> "Record":
        """
        Build a record from a decoded ``PostReadControl`` returned with a write.
        """
        return cls.from_result(control.dn, control.entry)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Record":
        """
        Build a record from plain key/value data.  The ``dn`` key, if present,
        becomes the record's distinguished name.
        """
        attributes = {k: v for k, v in data.items() if k != "dn"}
        dn = data.get("dn")
        if isinstance(dn, (list, tuple)):
            dn = dn[0] if dn else None
        if isinstance(dn, bytes):
            dn = dn.decode("utf-8")
        return cls(attributes, dn=dn)

    @property
    def dn(self) -> str | None:
        return self._dn

    def first(self, name: str, default: Any = None) -> Any:
        """
        Return the first value of ``name``, or ``default`` if the attribute is
        absent or empty.
        """
        values = self._attributes.get(name)
        if not values:
            return default
        return values[0]

    def to_dict(self) -> dict[str, Any]:
        """
        Return a plain ``dict`` of lists; includes ``dn`` when it is set.
        """
        data: dict[str, Any] = {k: list(v) for k, v in self._attributes.items()}
        if self._dn:
            data["dn"] = self._dn
        return data

    def __getitem__(self, name: str) -> tuple[InputValue, ...]:
        return self._attributes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._attributes)

    def __len__(self) -> int:
        return len(self._attributes)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return self._dn == other._dn and self._attributes == other._attributes
        return super().__eq__(other)

    def __hash__(self) -> int:
        return hash((self._dn, tuple(self._attributes.items())))

    def __repr__(self) -> str:
        return f"<Record dn={self._dn!r} attributes={list(self._attributes)!r}>"
