"""database facade tests against an in-memory transport"""

import gc
from pytest import raises
from couchrelay import broker
from couchrelay.broker import Database, DocPath, Revision
from couchrelay.network import *
from couchrelay.stream import Row, RowStream
from couchrelay.testutil import MockDatabase, MockSession, Reply, TEST_URL

REV1 = '1-4c6114c65e295552ab1019e2b046b10e'
REV2 = '2-185ccf92154a9f24a4f4fd12233bf463'
DOC_ID = '43734cf3ce6d5a37050c050bb600006b'

ALL_DOCS = b'''{"total_rows":3,"offset":1,"update_seq":31,"rows":[
{"id":"org.couchdb.user:5wmx","key":"org.couchdb.user:5wmx","value":{"rev":"1-747e"}}
]}
'''


# HELPERS

def test_doc_path():
    assert DocPath('foo') == ['foo']
    assert DocPath('foo/bar') == ['foo/bar']
    assert DocPath('_design/foo/bar') == ['_design', 'foo/bar']
    assert DocPath('_local/foo') == ['_local', 'foo']


def test_revision():
    assert Revision(Headers({'ETag': '"' + REV1 + '"'})) == REV1
    assert Revision(Headers()) is None
    assert Revision(None) is None


def test_database_url():
    db = Database('some/db', MockSession())
    assert db.resource.url == broker.COUCHDB_URL.rstrip('/') + '/some%2Fdb'
    assert db.name == 'some/db'
    assert repr(db) == "<Database 'some/db'>"


def test_database_full_url():
    db = Database(TEST_URL + '/', MockSession())
    assert db.resource.url == TEST_URL
    assert db.name == 'testdb'


def test_database_name_like_a_scheme():
    for name in ('httpbin', 'https_logs'):
        db = Database(name, MockSession())
        assert db.resource.url == broker.COUCHDB_URL.rstrip('/') + '/' + name
        assert db.name == name


def test_database_resource():
    resource = Resource(TEST_URL, MockSession())
    assert Database(resource).resource is resource


# GET

class TestGet():

    def test_missing_id(self):
        db = MockDatabase()

        with raises(ValidationError) as e:
            db.get('')

        assert str(e.value) == 'document identifier required'
        assert db.resource.session.calls == []

    def test_invalid_options(self):
        db = MockDatabase()

        with raises(UnsupportedOptionType) as e:
            db.get('foo', foo=object())

        assert 'cannot convert type object' in str(e.value)
        assert db.resource.session.calls == []

    def test_network_failure(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.get('foo')

        assert str(e.value) == 'GET http://example.com/testdb/foo: net error'

    def test_error_response(self):
        with raises(HTTPError) as e:
            MockDatabase(Reply(400)).get('foo')

        assert str(e.value) == 'Bad Request'
        assert e.value.status == 400

    def test_not_found(self):
        with raises(ResourceNotFound):
            MockDatabase(Reply(404, b'{"error":"not_found",'
                                    b'"reason":"missing"}')).get('foo')

    def test_status_ok(self):
        reply = Reply(200, b'some response')
        db = MockDatabase(reply)
        assert db.get('foo') == b'some response'
        assert reply.data.close_count == 1

    def test_options(self):
        db = MockDatabase(Reply(200, b'{}'))
        db.get('_design/foo', rev=REV1, revs=True, open_revs=['a', 'b'])
        call, = db.resource.session.calls
        assert call.method == 'GET'
        assert call.url == TEST_URL + '/_design/foo?rev=' + REV1 + \
            '&revs=true&open_revs=a&open_revs=b'
        assert call.headers['Accept'] == 'application/json'

    def test_escaped_id(self):
        db = MockDatabase(Reply(200, b'{}'))
        db.get('a/b c')
        assert db.resource.session.calls[0].url == TEST_URL + '/a%2Fb%20c'

    def test_body_read_failure(self):
        reply = Reply(200, b'some response', error=OSError('read error'))

        with raises(TransportError) as e:
            MockDatabase(reply).get('foo')

        assert 'read error' in str(e.value)
        assert reply.data.close_count == 1


# PUT

class TestPut():

    def test_missing_id(self):
        db = MockDatabase()

        with raises(ValidationError):
            db.put('', {'foo': 'bar'})

        assert db.resource.session.calls == []

    def test_network_error(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.put('foo', {'foo': 'bar'})

        assert str(e.value) == 'PUT http://example.com/testdb/foo: net error'

    def test_bad_request(self):
        with raises(HTTPError) as e:
            MockDatabase(Reply(400)).put('foo', {})

        assert str(e.value) == 'Bad Request'
        assert e.value.status == 400

    def test_invalid_json_response(self):
        with raises(DecodeError):
            MockDatabase(Reply(200, b'invalid json')).put('foo', {})

    def test_invalid_envelope(self):
        with raises(DecodeError):
            MockDatabase(Reply(201, b'{"ok":true}')).put('foo', {})

    def test_invalid_document(self):
        db = MockDatabase(Reply(200))

        with raises(ValidationError):
            db.put('foo', {'foo': object()})

        assert db.resource.session.calls == []

    def test_doc_created(self):
        db = MockDatabase(Reply(201, b'{"ok":true,"id":"foo","rev":"' +
                                REV1.encode() + b'"}',
                                {'ETag': '"' + REV1 + '"'}))
        assert db.put('foo', {'foo': 'bar'}) == REV1
        call, = db.resource.session.calls
        assert call.method == 'PUT'
        assert call.url == TEST_URL + '/foo'
        assert call.body == b'{"foo":"bar"}'
        assert call.headers['Content-Type'] == 'application/json'

    def test_conflict(self):
        with raises(ResourceConflict) as e:
            MockDatabase(Reply(409, b'{"error":"conflict",'
                                    b'"reason":"Document update conflict."}')
                         ).put('foo', {'_rev': REV1})

        assert e.value.status == 409

    def test_unexpected_id(self):
        db = MockDatabase(Reply(201, b'{"ok":true,"id":"unexpected",'
                                     b'"rev":"' + REV1.encode() + b'"}'))

        with raises(ConsistencyError) as e:
            db.put('foo', {'foo': 'bar'})

        assert str(e.value) == 'modified document ID (unexpected) does not ' \
                               'match that requested (foo)'
        assert e.value.requested == 'foo'
        assert e.value.returned == 'unexpected'

    def test_batch_mode(self):
        db = MockDatabase(Reply(202, b'{"ok":true,"id":"foo"}'))
        assert db.put('foo', {}, batch='ok') is None
        assert db.resource.session.calls[0].url == TEST_URL + '/foo?batch=ok'


# CREATE

class TestCreateDoc():

    def test_network_error(self):
        db = MockDatabase(error=OSError('foo error'))

        with raises(TransportError) as e:
            db.createDoc({'foo': 'bar'})

        assert str(e.value) == 'POST http://example.com/testdb: foo error'

    def test_invalid_doc(self):
        db = MockDatabase()

        with raises(ValidationError):
            db.createDoc(object())

        assert db.resource.session.calls == []

    def test_error_response(self):
        with raises(HTTPError) as e:
            MockDatabase(Reply(400)).createDoc({'foo': 'bar'})

        assert str(e.value) == 'Bad Request'

    def test_invalid_json_response(self):
        with raises(DecodeError):
            MockDatabase(Reply(200, b'invalid json')).createDoc({'foo': 'bar'})

    def test_success(self):
        db = MockDatabase(Reply(201, b'{"ok":true,"id":"' + DOC_ID.encode() +
                                b'","rev":"' + REV1.encode() + b'"}\n'))
        assert db.createDoc({'foo': 'bar'}) == (DOC_ID, REV1)
        call, = db.resource.session.calls
        assert call.method == 'POST'
        assert call.url == TEST_URL
        assert call.body == b'{"foo":"bar"}'


# DELETE

class TestDelete():

    def test_missing_id(self):
        db = MockDatabase()

        with raises(ValidationError):
            db.delete('', REV1)

        assert db.resource.session.calls == []

    def test_network_error(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.delete('foo')

        assert str(e.value) == \
            'DELETE http://example.com/testdb/foo?rev=: net error'

    def test_conflict(self):
        db = MockDatabase(Reply(409, b'{"error":"conflict",'
                                     b'"reason":"Document update conflict."}'))

        with raises(ResourceConflict) as e:
            db.delete(DOC_ID)

        assert isinstance(e.value, HTTPError)
        assert e.value.status == 409
        assert e.value.error == 'conflict'

    def test_success(self):
        reply = Reply(200, b'{"ok":true,"id":"' + DOC_ID.encode() +
                      b'","rev":"' + REV2.encode() + b'"}',
                      {'ETag': '"' + REV2 + '"'})
        db = MockDatabase(reply)
        assert db.delete(DOC_ID, REV1) == REV2
        call, = db.resource.session.calls
        assert call.method == 'DELETE'
        assert call.url == TEST_URL + '/' + DOC_ID + '?rev=' + REV1
        assert reply.data.close_count == 1

    def test_revision_from_body(self):
        db = MockDatabase(Reply(200, b'{"ok":true,"id":"foo","rev":"' +
                                REV2.encode() + b'"}'))
        assert db.delete('foo', REV1) == REV2


# DATABASE

class TestStats():

    def test_network_error(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.stats()

        assert str(e.value) == 'GET http://example.com/testdb: net error'

    def test_1_6_1(self):
        db = MockDatabase(Reply(200, b'{"db_name":"_users","doc_count":3,'
                                     b'"doc_del_count":14,"update_seq":31,'
                                     b'"disk_size":127080,"data_size":6028}'))
        stats = db.stats()
        assert stats.name == '_users'
        assert stats.update_seq == '31'
        assert (stats.disk_size, stats.active_size) == (127080, 6028)
        assert db.resource.session.calls[0].url == TEST_URL

    def test_2_0_0(self):
        db = MockDatabase(Reply(200, b'{"db_name":"_users","update_seq":"13-g1",'
                                     b'"sizes":{"file":87323,"external":2495,'
                                     b'"active":6082},"doc_del_count":6,'
                                     b'"doc_count":1}'))
        stats = db.stats()
        assert stats.update_seq == '13-g1'
        assert (stats.disk_size, stats.active_size, stats.external_size) == \
            (87323, 6082, 2495)

    def test_not_an_object(self):
        with raises(DecodeError):
            MockDatabase(Reply(200, b'[]')).stats()


def JsonCommand(call):
    if call.headers.get('Content-Type') != 'application/json':
        raise AssertionError('expected a JSON Content-Type')

    return Reply(202, b'{"ok":true}')


class TestCommands():

    def test_compact(self):
        db = MockDatabase(handler=JsonCommand)
        assert db.compact() is None
        call, = db.resource.session.calls
        assert call.method == 'POST'
        assert call.url == TEST_URL + '/_compact'
        assert call.body == b'{}'

    def test_compact_network_error(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.compact()

        assert str(e.value) == \
            'POST http://example.com/testdb/_compact: net error'

    def test_compact_view(self):
        db = MockDatabase(handler=JsonCommand)
        db.compactView('foo')
        call, = db.resource.session.calls
        assert call.url == TEST_URL + '/_compact/foo'
        assert call.body == b'{}'

    def test_compact_view_without_ddoc(self):
        db = MockDatabase()

        with raises(ValidationError) as e:
            db.compactView('')

        assert str(e.value) == 'design document identifier required'
        assert db.resource.session.calls == []

    def test_compact_view_network_error(self):
        db = MockDatabase(error=OSError('net error'))

        with raises(TransportError) as e:
            db.compactView('foo')

        assert str(e.value) == \
            'POST http://example.com/testdb/_compact/foo: net error'

    def test_view_cleanup(self):
        db = MockDatabase(handler=JsonCommand)
        db.viewCleanup()
        call, = db.resource.session.calls
        assert call.url == TEST_URL + '/_view_cleanup'
        assert call.body == b'{}'

    def test_command_error(self):
        with raises(Unauthorized) as e:
            MockDatabase(Reply(401, b'{"error":"unauthorized","reason":'
                                    b'"You are not a server admin."}')
                         ).compact()

        assert str(e.value) == 'unauthorized: You are not a server admin.'


# VIEWS

class TestRowsQuery():

    def test_invalid_options(self):
        db = MockDatabase()

        with raises(UnsupportedOptionType):
            db.rowsQuery('_all_docs', foo=object())

        assert db.resource.session.calls == []

    def test_network_error(self):
        db = MockDatabase(error=OSError('go away'))

        with raises(TransportError) as e:
            db.rowsQuery('_all_docs')

        assert str(e.value) == \
            'GET http://example.com/testdb/_all_docs: go away'

    def test_error_response(self):
        with raises(HTTPError) as e:
            MockDatabase(Reply(400)).rowsQuery('_all_docs')

        assert str(e.value) == 'Bad Request'

    def test_rows(self):
        reply = Reply(200, ALL_DOCS)
        db = MockDatabase(reply)
        rows = db.rowsQuery('/_all_docs?update_seq=true&limit=1&skip=1')
        assert isinstance(rows, RowStream)
        assert db.resource.session.calls[0].url == \
            TEST_URL + '/_all_docs?update_seq=true&limit=1&skip=1'
        assert list(rows) == [Row('org.couchdb.user:5wmx',
                                  b'"org.couchdb.user:5wmx"',
                                  b'{"rev":"1-747e"}', None, None)]
        assert (rows.total_rows, rows.offset, rows.update_seq) == (3, 1, '31')
        assert reply.data.close_count == 1

    def test_path_query_and_options(self):
        db = MockDatabase(Reply(200, b'{"rows":[]}'))
        db.rowsQuery('_all_docs?update_seq=true', limit=1)
        assert db.resource.session.calls[0].url == \
            TEST_URL + '/_all_docs?update_seq=true&limit=1'

    def test_escaped_path_segments(self):
        db = MockDatabase(Reply(200, b'{"rows":[]}'))
        db.rowsQuery('_design/a%2Fb/_view/v')
        assert db.resource.session.calls[0].url == \
            TEST_URL + '/_design/a%2Fb/_view/v'

    def test_no_results(self):
        db = MockDatabase(Reply(200, b'{"total_rows":0,"offset":0,'
                                     b'"update_seq":"1-g1","rows":[]}'))
        rows = db.rowsQuery(['_all_docs'], update_seq=True, limit=1)
        assert list(rows) == []
        assert rows.update_seq == '1-g1'

    def test_rows_not_decoded_eagerly(self):
        reply = Reply(200, ALL_DOCS)
        rows = MockDatabase(reply).rowsQuery('_all_docs')
        assert reply.data.stream.tell() == 0
        rows.close()
        assert reply.data.close_count == 1


class TestQueries():

    def test_all_docs(self):
        db = MockDatabase(error=OSError('test error'))

        with raises(TransportError) as e:
            db.allDocs()

        assert str(e.value) == \
            'GET http://example.com/testdb/_all_docs: test error'

    def test_all_docs_options(self):
        db = MockDatabase(Reply(200, ALL_DOCS))
        rows = db.allDocs(include_docs=True, keys=['a', 'b'])
        assert db.resource.session.calls[0].url == \
            TEST_URL + '/_all_docs?include_docs=true&keys=a&keys=b'
        rows.close()

    def test_all_docs_abandoned(self):
        reply = Reply(200, ALL_DOCS)
        db = MockDatabase(reply)
        enabled = gc.isenabled()
        gc.disable()

        try:
            for row in db.allDocs():
                break

            del row
            assert reply.data.close_count == 1
        finally:
            if enabled: gc.enable()

    def test_query(self):
        db = MockDatabase(error=OSError('test error'))

        with raises(TransportError) as e:
            db.query('ddoc', 'view')

        assert str(e.value) == \
            'GET http://example.com/testdb/_design/ddoc/_view/view: test error'

    def test_query_with_design_prefix(self):
        db = MockDatabase(Reply(200, b'{"rows":[{"key":null,"value":3}]}'))
        rows = list(db.query('_design/ddoc', 'view', reduce=True))
        assert rows == [Row(None, b'null', b'3', None, None)]
        assert db.resource.session.calls[0].url == \
            TEST_URL + '/_design/ddoc/_view/view?reduce=true'

    def test_query_without_names(self):
        db = MockDatabase()

        with raises(ValidationError):
            db.query('', 'view')

        with raises(ValidationError):
            db.query('_design/', 'view')

        with raises(ValidationError) as e:
            db.query('ddoc', '')

        assert str(e.value) == 'view name required'
        assert db.resource.session.calls == []
