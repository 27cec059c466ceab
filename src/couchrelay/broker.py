"""
.. py:module:: couchrelay.broker
   :synopsis: Document and view operations on a CouchDB database.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

A simple usage example:

>>> from couchrelay import Database
>>> db = Database('python-tests')
>>> doc_id, doc_rev = db.createDoc({'type': 'Person', 'name': 'John Doe'})  #doctest: +SKIP
>>> db.get(doc_id)                  #doctest: +SKIP
b'{"_id":"...","_rev":"1-...","type":"Person","name":"John Doe"}'
>>> rev = db.put('johndoe', {'type': 'Person', 'name': 'John Doe'})  #doctest: +SKIP
>>> for row in db.allDocs(include_docs=True):   #doctest: +SKIP
...     print(row.id)
johndoe
...
>>> db.delete('johndoe', rev)       #doctest: +SKIP
'2-...'

Every operation makes at most one request; no operation is ever retried.
Errors are raised as the exceptions defined in :mod:`.network`.
"""
import os
from urllib.parse import parse_qsl, unquote, urlsplit

from couchrelay import network
from couchrelay.network import ConsistencyError, DecodeError, \
                               ValidationError, JSON_TYPE
from couchrelay.options import EncodeOptions
from couchrelay.stream import RowStream
from couchrelay.versions import Stats, StatsFromInfo

__all__ = ['COUCHDB_URL', 'Database', 'DocPath', 'Revision']
__docformat__ = 'restructuredtext en'


COUCHDB_URL = os.environ.get('COUCHDB_URL', 'http://localhost:5984/')
"""
The default CouchDB URL, either ``http://localhost:5984/`` or fetched from the
environment.
"""


def DocPath(id:str) -> list:
    """
    Return the path segments for the given document *ID*.

    Splits IDs that start with a reserved segment (starting with '_'), e.g.
    ``"_design/foo/bar"`` at the first ``/``, resulting in two segments:
    ``["_design", "foo/bar"]``.

    >>> DocPath('foo/bar')
    ['foo/bar']
    >>> DocPath('_design/foo')
    ['_design', 'foo']
    """
    if id[:1] == '_':
        return id.split('/', 1)
    else:
        return [id]


def Revision(headers) -> str:
    """
    Return the revision in the ``ETag`` of the response *headers*, stripped
    of its quotes, or ``None``.
    """
    etag = headers.get('ETag') if headers is not None else None
    return etag.strip('"') if etag else None


def _Required(value:str, what:str) -> str:
    if not value:
        raise ValidationError("{} required".format(what))

    return value


def _Envelope(data:object) -> (str, str):
    """
    Return the ``id`` and ``rev`` of a write result envelope; ``rev`` is
    ``None`` for batched writes.
    """
    if not isinstance(data, dict) or not isinstance(data.get('id'), str):
        raise DecodeError("unexpected write result: {!r}".format(data))

    rev = data.get('rev')

    if rev is not None and not isinstance(rev, str):
        raise DecodeError("unexpected revision: {!r}".format(rev))

    return data['id'], rev


class Database(object):
    """
    Representation of a database on a CouchDB server.

    Instances hold nothing but the database URL and the transport, and can
    be shared among threads.
    """

    def __init__(self, url, session=None):
        """
        :param url: A URL or the name of the DB as `str` or a
                    :class:`.network.Resource`; a URL must be fully qualified,
                    including the scheme (http[s]), otherwise the *url* is
                    taken as the DB name on the server at :data:`.COUCHDB_URL`.
        :param session: The transport; if ``None``, a new
                        :class:`.network.Session` is created.
        """
        if isinstance(url, str):
            if urlsplit(url).scheme not in ('http', 'https'):
                url = network.UrlJoin(COUCHDB_URL, [url])

            self.resource = network.Resource(url, session,
                                             {'Accept': JSON_TYPE})
        else:
            self.resource = url

    def __repr__(self) -> str:
        return '<%s %r>' % (type(self).__name__, self.name)

    @property
    def name(self) -> str:
        """
        The name string of the database, unescaped.
        """
        return unquote(self.resource.url.rsplit('/', 1)[-1])

    # DOCUMENT API

    def get(self, id:str, **options) -> bytes:
        """
        Return the raw JSON body of the document with the specified *ID*.

        Options (eg., ``rev='1-...'``, ``revs=True``, ``conflicts=True``,
        ``open_revs=['1-a', '2-b']``) are sent as query parameters.

        :raise ValidationError: If *ID* is empty or an option is invalid.
        :raise ResourceNotFound: If no such document exists.
        """
        path = DocPath(_Required(id, "document identifier"))
        response = self.resource.get(*path, params=EncodeOptions(options))
        return response.data.readAll()

    def put(self, id:str, document:object, **options) -> str:
        """
        Create or update a *document* with the specified *ID*.

        :return: The new revision of the document.
        :raise ValidationError: If *ID* is empty or the document cannot be
                                serialized.
        :raise ResourceConflict: If the document's revision value does not
                                 match the value in the DB.
        :raise ConsistencyError: If the server reports a different document
                                 ID as modified.
        """
        path = DocPath(_Required(id, "document identifier"))
        response = self.resource.putJson(*path, json=document,
                                         params=EncodeOptions(options))
        doc_id, rev = _Envelope(response.data)

        if doc_id != id:
            raise ConsistencyError(id, doc_id)

        return rev

    def createDoc(self, document:object, **options) -> (str, str):
        """
        **Create** a new document with an ID allocated by the server unless
        the document has an ``_id``.

        Note that it is generally better to avoid saving documents with no ID
        and instead generate document IDs on the client side, as POST is not
        idempotent.

        :return: A `tuple` of the ``(id, rev)`` values of the new document.
        :raise ValidationError: If the document cannot be serialized.
        """
        response = self.resource.postJson(json=document,
                                          params=EncodeOptions(options))
        return _Envelope(response.data)

    def delete(self, id:str, rev:str=None) -> str:
        """
        Delete the document with the specified *ID* at revision *rev*.

        Without a revision, an empty ``rev`` parameter is sent and the server
        will usually refuse the deletion as a conflict.

        :return: The revision of the deletion.
        :raise ValidationError: If *ID* is empty.
        :raise ResourceConflict: If the revision is not the latest one.
        """
        path = DocPath(_Required(id, "document identifier"))
        response = self.resource.delete(*path, params=[('rev', rev or '')])
        new_rev = Revision(response.headers)

        if new_rev:
            response.data.readAll()
            return new_rev

        _, new_rev = _Envelope(network.ReadJson(response).data)
        return new_rev

    # DATABASE API

    def stats(self) -> Stats:
        """
        Return the normalized :class:`.versions.Stats` of the database.
        """
        response = self.resource.getJson()

        if not isinstance(response.data, dict):
            raise DecodeError("unexpected database info: {!r}".format(
                response.data
            ))

        return StatsFromInfo(response.data)

    def compact(self):
        """
        Start the compaction of the database.
        """
        self._command('_compact')

    def compactView(self, ddoc:str):
        """
        Start the compaction of the view indexes of the design document
        *ddoc*.

        :raise ValidationError: If *ddoc* is empty.
        """
        self._command('_compact', _Required(ddoc, "design document identifier"))

    def viewCleanup(self):
        """
        Remove all unused index files from the database storage area.
        """
        self._command('_view_cleanup')

    def _command(self, *path:[str]):
        response = self.resource.post(*path, body=b'{}',
                                      headers={'Content-Type': JSON_TYPE})
        response.data.readAll()

    # VIEW API

    def rowsQuery(self, path, **options) -> RowStream:
        """
        Query a listing resource relative to the DB at *path* and return a
        :class:`.stream.RowStream` over its rows; no row is decoded before it
        is requested.

        :param path: A `str` of slash-separated path segments
                     (eg., ``"_design/foo/_view/bar"``), optionally with a
                     query string, or a list of segments; the segments of a
                     `str` path may be percent-escaped.
        :param options: Query parameters, eg. ``limit=10``,
                        ``include_docs=True``, ``update_seq=True``.
        :raise ValidationError: If an option is invalid.
        """
        params = EncodeOptions(options)

        if isinstance(path, str):
            path, _, query = path.partition('?')
            path = [unquote(s) for s in path.strip('/').split('/')]
            params = parse_qsl(query, keep_blank_values=True) + params

        response = self.resource.get(*path, params=params)
        return RowStream(response.data)

    def allDocs(self, **options) -> RowStream:
        """
        Return the rows of the ``_all_docs`` listing.
        """
        return self.rowsQuery(['_all_docs'], **options)

    def query(self, ddoc:str, view:str, **options) -> RowStream:
        """
        Return the rows of the *view* in the design document *ddoc*.

        :param ddoc: The design document name, with or without the
                     ``_design/`` prefix.
        :raise ValidationError: If *ddoc* or *view* are empty.
        """
        ddoc = _Required(ddoc, "design document identifier")

        if ddoc.startswith('_design/'):
            ddoc = ddoc[len('_design/'):]

        path = ['_design', _Required(ddoc, "design document identifier"),
                '_view', _Required(view, "view name")]
        return self.rowsQuery(path, **options)
