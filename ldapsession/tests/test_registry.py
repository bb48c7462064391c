# type: ignore
"""
Tests for SessionRegistry and named server configuration.
"""

import threading
import unittest
from unittest.mock import MagicMock, patch

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from ldapsession.conf import get_server_config
from ldapsession.registry import SessionRegistry

# Configure Django settings for testing
if not settings.configured:
    settings.configure(
        LDAP_SERVERS={
            "default": {
                "url": "ldap://localhost:389",
                "user": "cn=admin,dc=example,dc=com",
                "password": "admin",
            },
        },
    )


class FakeSession:
    instances = []

    def __init__(self, uri, options=None):
        self.uri = uri
        self.options = options
        self.closed = False
        FakeSession.instances.append(self)

    def close(self):
        self.closed = True


class TestSessionRegistry(unittest.TestCase):
    def setUp(self):
        FakeSession.instances = []
        self.registry = SessionRegistry(session_class=FakeSession)

    def test_one_session_per_uri(self):
        first = self.registry.get("ldap://a", {"max_busy_retries": 1})
        second = self.registry.get("ldap://a", {"max_busy_retries": 5})
        self.assertIs(first, second)
        self.assertEqual(first.options, {"max_busy_retries": 1})
        self.assertIsNot(self.registry.get("ldap://b"), first)
        self.assertEqual(len(self.registry), 2)
        self.assertIn("ldap://a", self.registry)
        self.assertTrue(self.registry.has_session("ldap://b"))
        self.assertFalse(self.registry.has_session("ldap://c"))

    def test_closed_session_is_replaced(self):
        first = self.registry.get("ldap://a")
        first.close()
        second = self.registry.get("ldap://a")
        self.assertIsNot(first, second)

    def test_failed_construction_is_not_cached(self):
        registry = SessionRegistry(session_class=MagicMock(side_effect=ValueError("boom")))
        with self.assertRaises(ValueError):
            registry.get("ldap://a")
        self.assertFalse(registry.has_session("ldap://a"))

    def test_concurrent_get_creates_one_session(self):
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(self.registry.get("ldap://a")))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(FakeSession.instances), 1)
        self.assertTrue(all(r is results[0] for r in results))

    def test_slow_connect_does_not_block_other_uris(self):
        connecting = threading.Event()
        release = threading.Event()

        class SlowSession(FakeSession):
            def __init__(self, uri, options=None):
                if uri == "ldap://a":
                    connecting.set()
                    release.wait(5)
                super().__init__(uri, options)

        registry = SessionRegistry(session_class=SlowSession)
        cached = registry.get("ldap://b")
        results = {}
        slow = threading.Thread(target=lambda: results.setdefault("a", registry.get("ldap://a")))
        slow.start()
        try:
            self.assertTrue(connecting.wait(5))
            self.assertIs(registry.get("ldap://b"), cached)
            self.assertEqual(registry.get("ldap://c").uri, "ldap://c")
            self.assertNotIn("a", results)
        finally:
            release.set()
            slow.join(5)
        self.assertEqual(results["a"].uri, "ldap://a")
        self.assertIs(registry.get("ldap://a"), results["a"])

    def test_release(self):
        session = self.registry.get("ldap://a")
        self.registry.release("ldap://a")
        self.registry.release("ldap://unknown")
        self.assertTrue(session.closed)
        self.assertNotIn("ldap://a", self.registry)

    def test_close(self):
        sessions = [self.registry.get("ldap://a"), self.registry.get("ldap://b")]
        self.registry.close()
        self.assertTrue(all(s.closed for s in sessions))
        self.assertEqual(len(self.registry), 0)

    def test_custom_storage(self):
        storage = {}
        registry = SessionRegistry(storage, session_class=FakeSession)
        session = registry.get("ldap://a")
        self.assertIs(storage["ldap://a"], session)

    def test_get_by_name(self):
        session = self.registry.get_by_name("default")
        self.assertEqual(session.uri, "ldap://localhost:389")
        self.assertEqual(
            session.options, {"user": "cn=admin,dc=example,dc=com", "password": "admin"}
        )


class TestServerConfig(unittest.TestCase):
    def test_get_server_config_does_not_mutate_settings(self):
        url, options = get_server_config("default")
        self.assertEqual(url, "ldap://localhost:389")
        self.assertNotIn("url", options)
        self.assertIn("url", settings.LDAP_SERVERS["default"])

    def test_unknown_server(self):
        with self.assertRaises(ImproperlyConfigured):
            get_server_config("missing")

    def test_server_without_url(self):
        with patch("django.conf.settings.LDAP_SERVERS", {"nourl": {"user": "x"}}):
            with self.assertRaises(ImproperlyConfigured):
                get_server_config("nourl")
