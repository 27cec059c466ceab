"""
.. py:module:: testutil
   :synopsis: An in-memory transport for the test cases.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)
"""
from collections import namedtuple
from io import BytesIO

from couchrelay import broker
from couchrelay.network import Headers, Response

TEST_URL = 'http://example.com/testdb'

Call = namedtuple("Call", "method url body headers")


class MockBody(object):
    """
    A response body that counts how often it was closed and can fail on
    reading after *fail_after* bytes.
    """

    def __init__(self, data=b'', error:Exception=None, fail_after:int=0):
        if isinstance(data, str): data = data.encode('utf-8')
        self.stream = BytesIO(data)
        self.error = error
        self.fail_after = fail_after
        self.close_count = 0

    def read(self, number:int=None) -> bytes:
        if self.error is not None and self.stream.tell() >= self.fail_after:
            raise self.error

        if number is None or number < 0:
            number = -1

        if self.error is not None:
            left = self.fail_after - self.stream.tell()
            number = left if number < 0 else min(number, left)

        return self.stream.read(number)

    def close(self):
        self.close_count += 1

    @property
    def closed(self) -> bool:
        return self.close_count > 0


def Reply(status:int, data=b'', headers:dict=None, **kwargs) -> Response:
    """
    Create a canned :class:`.network.Response` with a :class:`.MockBody`.
    """
    return Response(status, Headers(headers or {}), MockBody(data, **kwargs))


class MockSession(object):
    """
    A transport that records all requests and returns the canned *responses*
    in order, or raises *error* for every request.
    """

    def __init__(self, *responses:[Response], error:Exception=None,
                 handler=None):
        self.responses = list(responses)
        self.error = error
        self.handler = handler
        self.calls = []

    def request(self, method:str, url:str, body:bytes=None,
                headers:dict=None) -> Response:
        call = Call(method, url, body, Headers(headers or {}))
        self.calls.append(call)

        if self.error is not None:
            raise self.error
        elif self.handler is not None:
            return self.handler(call)

        return self.responses.pop(0)


def MockDatabase(*responses:[Response], **kwargs) -> broker.Database:
    """
    Return a :class:`.broker.Database` at :data:`.TEST_URL` using a
    :class:`.MockSession` with the given *responses* and keyword arguments.
    """
    return broker.Database(TEST_URL, MockSession(*responses, **kwargs))
