"""
Type aliases for the python-ldap data structures passed around by sessions.
"""

from typing import Any

#: One value of an attribute as it travels on the wire.
WireValue = bytes
#: One value of an attribute as handed to us by a caller.
InputValue = str | bytes
#: ``(attribute, [values])`` for ``add_ext``.
AddModlistEntry = tuple[str, list[WireValue]]
AddModlist = list[AddModlistEntry]
#: ``(mod_op, attribute, [values] | None)`` for ``modify_ext``.
ModifyModlistEntry = tuple[int, str, list[WireValue] | None]
ModifyModlist = list[ModifyModlistEntry]
#: The 4-tuple returned by ``result3``.
Result3 = tuple[int, list[Any], int, list[Any]]
