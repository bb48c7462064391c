# Sessions reach python-ldap through this module so that tests can patch
# ``ldapsession.ldap.initialize`` with python-ldap-faker without touching the
# real ``ldap`` package.
import ldap
from ldap import *  # noqa: F403

__version__ = ldap.__version__
