"""
Helpers for distinguished names (directory paths).

The parent/child relationship is structural: ``child`` is a child of
``parent`` when removing the leading RDN of ``child`` leaves ``parent``.
"""

import ldap
import ldap.dn


def _str2dn(path: str) -> list:
    try:
        return ldap.dn.str2dn(path)
    except ldap.DECODING_ERROR as e:
        msg = f"Invalid distinguished name: {path!r}"
        raise ValueError(msg) from e


def split(path: str) -> list[str]:
    """
    Return the RDNs of ``path``, leaf first.

    Raises:
        ValueError: ``path`` is not a valid distinguished name

    """
    return [ldap.dn.dn2str([rdn]) for rdn in _str2dn(path)]


def leaf(path: str) -> str:
    """
    Return the leaf RDN of ``path``.

    Raises:
        ValueError: ``path`` is empty or invalid

    """
    rdns = split(path)
    if not rdns:
        msg = "The root DSE has no RDN"
        raise ValueError(msg)
    return rdns[0]


def parent(path: str) -> str:
    """
    Return the parent of ``path``; the parent of a single-RDN path is ``""``.
    """
    parsed = _str2dn(path)
    if not parsed:
        msg = "The root DSE has no parent"
        raise ValueError(msg)
    return ldap.dn.dn2str(parsed[1:])


def join(rdn: str, parent_path: str) -> str:
    if not parent_path:
        return rdn
    return f"{rdn},{parent_path}"


def normalize(path: str) -> str:
    """
    Return a canonical, lower-cased form of ``path`` for comparisons.
    """
    return ldap.dn.dn2str(
        [
            [(attr.lower(), value.lower(), flags) for attr, value, flags in rdn]
            for rdn in _str2dn(path)
        ]
    )


def is_child(child: str, parent_path: str) -> bool:
    """
    Return ``True`` if ``child`` sits immediately below ``parent_path``.
    """
    parsed = _str2dn(child)
    if not parsed:
        return False
    return normalize(ldap.dn.dn2str(parsed[1:])) == normalize(parent_path)
