"""
.. py:module:: couchrelay
   :synopsis: A CouchDB document store adapter for Python 3.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)
"""

__version__ = (1, 0, 0) # MAJOR, MINOR, RELEASE

from couchrelay.broker import COUCHDB_URL, Database
from couchrelay.network import ConsistencyError, DecodeError, HTTPError, \
        PreconditionFailed, RedirectLimitExceeded, ResourceConflict, \
        ResourceNotFound, ServerError, TransportError, Unauthorized, \
        UnsupportedOptionType, ValidationError, Resource, Session
from couchrelay.options import EncodeOptions, Option
from couchrelay.stream import Row, RowStream
from couchrelay.versions import Stats
