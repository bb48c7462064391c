# type: ignore
"""
An in-memory stand-in for a python-ldap connection.

python-ldap-faker covers binds and searches well, but not the asynchronous
write calls (``add_ext``, ``modify_ext``, ``delete_ext``) or the post-read
control that :py:class:`~ldapsession.session.DirectorySession` relies on.
:py:class:`FakeDirectory` implements just that surface, applies requests when
their result is collected with ``result3``, and can be told to answer
``BUSY`` a number of times per request kind.
"""

import re
from collections import defaultdict

import ldap
from ldap.controls.readentry import PostReadControl

from ldapsession import dn as dnutils

EQUALITY = re.compile(r"^\(([A-Za-z0-9.;-]+)=([^*()]*)\)$")
PRESENCE = re.compile(r"^\(([A-Za-z0-9.;-]+)=\*\)$")


def _status(exc_class, result, desc, info=""):
    return exc_class({"result": result, "desc": desc, "info": info, "ctrls": []})


class FakeDirectory:
    """
    A tiny directory tree rooted at ``suffix``.

    Keyword Args:
        suffix: the naming context; it exists from the start

    """

    def __init__(self, suffix="dc=example,dc=com"):
        self.suffix = suffix
        #: normalized dn -> (dn, {attr: [bytes]})
        self.entries = {}
        #: request kind -> how many more times to answer BUSY
        self.busy = defaultdict(int)
        #: request kind -> callables; one is popped and run just before each
        #: request of that kind is applied
        self.hooks = defaultdict(list)
        self.calls = []
        self.options = {}
        self.bound = None
        self.unbound = False
        self.tls_started = False
        self.omit_post_read = False
        self._msgid = 0
        self._pending = {}
        self.register(suffix, {"objectClass": [b"top", b"domain"], "dc": [b"example"]})

    # Test helpers

    def register(self, dn, attrs):
        self.entries[dnutils.normalize(dn)] = (
            dn,
            {k: [v if isinstance(v, bytes) else v.encode() for v in vals] for k, vals in attrs.items()},
        )

    def exists(self, dn):
        return dnutils.normalize(dn) in self.entries

    def get(self, dn):
        return self.entries[dnutils.normalize(dn)][1]

    def count(self, kind):
        return len([c for c in self.calls if c[0] == kind])

    # Connection surface

    def set_option(self, option, value):
        self.options[option] = value

    def start_tls_s(self):
        self.tls_started = True

    def simple_bind_s(self, who=None, cred=None, serverctrls=None, clientctrls=None):
        self.calls.append(("bind", who))
        self.bound = who
        return (ldap.RES_BIND, [], 1, [])

    def unbind_s(self):
        self.calls.append(("unbind",))
        self.unbound = True

    def search_ext(self, base, scope, filterstr="(objectClass=*)", attrlist=None, *args, **kwargs):
        self.calls.append(("search", base, scope, filterstr, attrlist))
        return self._queue("search", lambda: self._search(base, scope, filterstr, attrlist))

    def add_ext(self, dn, modlist, serverctrls=None, clientctrls=None):
        self.calls.append(("add", dn, modlist))
        return self._queue("add", lambda: self._add(dn, modlist, serverctrls))

    def modify_ext(self, dn, modlist, serverctrls=None, clientctrls=None):
        self.calls.append(("modify", dn, modlist))
        return self._queue("modify", lambda: self._modify(dn, modlist, serverctrls))

    def delete_ext(self, dn, serverctrls=None, clientctrls=None):
        self.calls.append(("delete", dn))
        return self._queue("delete", lambda: self._delete(dn))

    def result3(self, msgid=ldap.RES_ANY, all=1, timeout=None, resp_ctrl_classes=None):  # noqa: A002
        kind, apply = self._pending.pop(msgid)
        if self.busy[kind] > 0:
            self.busy[kind] -= 1
            raise _status(ldap.BUSY, 51, "Server is busy")
        if self.hooks[kind]:
            self.hooks[kind].pop(0)()
        return apply()

    def rename_s(self, dn, newrdn, newsuperior=None, delold=1, serverctrls=None, clientctrls=None):
        self.calls.append(("rename", dn, newrdn, newsuperior, delold))
        if not self.exists(dn):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object")
        if newsuperior is not None and not self.exists(newsuperior):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object", "new superior missing")
        parent = newsuperior if newsuperior is not None else dnutils.parent(dn)
        new_dn = dnutils.join(newrdn, parent)
        if self.exists(new_dn):
            raise _status(ldap.ALREADY_EXISTS, 68, "Already exists")
        old_suffix = dnutils.normalize(dn)
        moved = {}
        for key in list(self.entries):
            if key == old_suffix or key.endswith("," + old_suffix):
                entry_dn, attrs = self.entries.pop(key)
                head = entry_dn[: len(entry_dn) - len(dn)]
                moved[head + new_dn] = attrs
        for entry_dn, attrs in moved.items():
            self.entries[dnutils.normalize(entry_dn)] = (entry_dn, attrs)

    # Internals

    def _queue(self, kind, apply):
        self._msgid += 1
        self._pending[self._msgid] = (kind, apply)
        return self._msgid

    def _matches(self, attrs, filterstr):
        if m := PRESENCE.match(filterstr):
            name = m.group(1).lower()
            return name == "objectclass" or any(k.lower() == name for k in attrs)
        if m := EQUALITY.match(filterstr):
            name, value = m.group(1).lower(), m.group(2).lower().encode()
            return any(
                k.lower() == name and value in [v.lower() for v in vals]
                for k, vals in attrs.items()
            )
        msg = f"FakeDirectory does not understand {filterstr!r}"
        raise AssertionError(msg)

    def _project(self, attrs, attrlist):
        if not attrlist or "*" in attrlist:
            return {k: list(v) for k, v in attrs.items()}
        wanted = {a.lower() for a in attrlist}
        return {k: list(v) for k, v in attrs.items() if k.lower() in wanted}

    def _search(self, base, scope, filterstr, attrlist):
        if not self.exists(base):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object")
        base_key = dnutils.normalize(base)
        found = []
        for key, (entry_dn, attrs) in self.entries.items():
            if scope == ldap.SCOPE_BASE:
                inside = key == base_key
            elif scope == ldap.SCOPE_ONELEVEL:
                inside = dnutils.is_child(entry_dn, base)
            else:
                inside = key == base_key or key.endswith("," + base_key)
            if inside and self._matches(attrs, filterstr):
                found.append((entry_dn, self._project(attrs, attrlist)))
        return (ldap.RES_SEARCH_RESULT, found, self._msgid, [])

    def _post_read(self, dn, serverctrls):
        wanted = [c for c in serverctrls or [] if c.controlType == PostReadControl.controlType]
        if not wanted or self.omit_post_read:
            return []
        control = PostReadControl()
        control.dn, attrs = self.entries[dnutils.normalize(dn)]
        control.entry = self._project(attrs, wanted[0].attrList)
        return [control]

    def _add(self, dn, modlist, serverctrls):
        if self.exists(dn):
            raise _status(ldap.ALREADY_EXISTS, 68, "Already exists")
        if not self.exists(dnutils.parent(dn)):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object", "parent missing")
        self.entries[dnutils.normalize(dn)] = (dn, {name: list(values) for name, values in modlist})
        return (ldap.RES_ADD, [], self._msgid, self._post_read(dn, serverctrls))

    def _modify(self, dn, modlist, serverctrls):
        if not self.exists(dn):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object")
        attrs = self.get(dn)
        for op, name, values in modlist:
            existing = next((k for k in attrs if k.lower() == name.lower()), name)
            if op == ldap.MOD_REPLACE:
                attrs.pop(existing, None)
                if values:
                    attrs[name] = list(values)
            elif op == ldap.MOD_ADD:
                attrs.setdefault(existing, []).extend(values)
            elif op == ldap.MOD_DELETE:
                attrs.pop(existing, None)
        return (ldap.RES_MODIFY, [], self._msgid, self._post_read(dn, serverctrls))

    def _delete(self, dn):
        if not self.exists(dn):
            raise _status(ldap.NO_SUCH_OBJECT, 32, "No such object")
        key = dnutils.normalize(dn)
        if any(k.endswith("," + key) for k in self.entries):
            raise _status(ldap.NOT_ALLOWED_ON_NONLEAF, 66, "Operation not allowed on non-leaf")
        del self.entries[key]
        return (ldap.RES_DELETE, [], self._msgid, [])
