"""
.. py:module:: couchrelay.network
   :synopsis: CouchDB HTTP communication layer.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

This module builds the HTTP requests sent to the document store, classifies
the responses, and provides the default transport, a :class:`.Session` over
:mod:`http.client` connections.

Any object with a ``request(method, url, body=None, headers=None)`` method
returning a :class:`.Response` can be used as the transport of a
:class:`.Resource`, with the response data being a binary file-like object
(supporting ``read()`` and ``close()``) that has not been read yet.
Transports signal network failures by raising :exc:`OSError` (including
timeouts) or :exc:`http.client.HTTPException`; the resource wraps them into
:exc:`.TransportError`.
"""
from collections import defaultdict, namedtuple
from functools import partial
from http import client
import logging
from threading import Lock
from urllib.parse import urljoin, urlsplit, urlunsplit, urlencode, quote

from couchrelay.serializer import Decode as DecodeJson, \
                                  EncodeBytes as EncodeJson

__all__ = ['ConsistencyError', 'DecodeError', 'HTTPError',
           'PreconditionFailed', 'RedirectLimitExceeded', 'ResourceConflict',
           'ResourceNotFound', 'ServerError', 'TransportError', 'Unauthorized',
           'UnsupportedOptionType', 'ValidationError',
           'Body', 'Classify', 'Headers', 'ReadJson', 'Resource', 'Response',
           'Session', 'UrlJoin']

CHUNK_SIZE = 1024 * 8 # 8 KB
"""
Number of bytes read at most in a single read from a response body.
"""

USER_AGENT = "couchrelay/1.0"
"""
The User-Agent header to use in requests.
"""

JSON_TYPE = 'application/json'

Response = namedtuple("Response", "status headers data")
"""
A named tuple representing the result from a request.

.. attribute:: status

    An `int` representing the response status value.

.. attribute:: headers

    A dict-like object representing the response headers
    (:class:`http.client.HTTPMessage` or :class:`.Headers`).

.. attribute:: data

    The (unread) response body; a :class:`.Body` once the response has
    passed through a :class:`.Resource`.
"""


quoteall = partial(quote, safe='')


def UrlJoin(base:str, segments:[str], params:[(str, str)]=None) -> str:
    """
    Assemble a URL based on a base segment, any number of path segments, and
    query parameters.

    >>> UrlJoin('http://example.org', ['_all_docs'])
    'http://example.org/_all_docs'

    A trailing slash on the URL *base* is handled gracefully:

    >>> UrlJoin('http://example.org/', ['_all_docs'])
    'http://example.org/_all_docs'

    And multiple segments become path parts:

    >>> UrlJoin('http://example.org/', ['foo', 'bar'])
    'http://example.org/foo/bar'

    All slashes within a segment are escaped:

    >>> UrlJoin('http://example.org/', ['foo/bar'])
    'http://example.org/foo%2Fbar'
    >>> UrlJoin('http://example.org/', ['foo', '/bar/'])
    'http://example.org/foo/%2Fbar%2F'

    Query parameters are a list of name, value pairs, in order:

    >>> UrlJoin('http://example.org', ['db'], [('key', 'a b'), ('key', 'c')])
    'http://example.org/db?key=a+b&key=c'

    It is not allowed to use ``None``:

    >>> UrlJoin('http://example.org/', None)
    Traceback (most recent call last):
        ...
    ValueError: segments cannot be None
    """
    path = [base]

    # escape and add the segments
    if segments:
        root = "{}" if base.endswith('/') else "/{}"
        path.append(root.format('/'.join( quoteall(s) for s in segments )))
    elif segments is None:
        raise ValueError("segments cannot be None")

    if params: path.extend([ '?', urlencode(params) ])
    return ''.join(path)


class ValidationError(ValueError):
    """
    Exception raised when the arguments of an operation are invalid; no
    request was sent to the server.
    """


class UnsupportedOptionType(ValidationError, TypeError):
    """
    Exception raised when an option value cannot be encoded as a query
    parameter.
    """

    def __init__(self, type_:type, name:str):
        self.type = type_
        self.name = name
        super(UnsupportedOptionType, self).__init__(
            'cannot convert type {} to a query parameter (option "{}")'.format(
                type_.__name__, name
            )
        )


class DecodeError(ValueError):
    """
    Exception raised when a response body is not the expected JSON.
    """


class ConsistencyError(RuntimeError):
    """
    Exception raised when a successful write response refers to another
    document than the one requested.
    """

    def __init__(self, requested:str, returned:str):
        self.requested = requested
        self.returned = returned
        super(ConsistencyError, self).__init__(
            "modified document ID ({}) does not match that "
            "requested ({})".format(returned, requested)
        )


class TransportError(client.HTTPException):
    """
    Exception raised when the transport failed to deliver a request or to
    read a response (connection errors, timeouts, broken streams).

    .. attribute:: error

        The original exception raised by the transport.
    """

    def __init__(self, error:Exception, method:str=None, url:str=None):
        self.error = error
        self.method = method
        self.url = url

        if method:
            msg = "{} {}: {}".format(method, url, error)
        else:
            msg = str(error)

        super(TransportError, self).__init__(msg)


class RedirectLimitExceeded(client.HTTPException):
    """
    Exception raised by the :class:`.Session` when a request is redirected
    more often than allowed by the maximum number of redirections.
    """


class HTTPError(client.HTTPException):
    """
    Base class for errors based on HTTP status codes >= 400.

    .. attribute:: status

        The HTTP status code.

    .. attribute:: error

        The ``error`` field of the server's JSON error message or ``None``.

    .. attribute:: reason

        The ``reason`` field of the server's JSON error message or ``None``.
    """

    def __init__(self, status:int, error:str=None, reason:str=None):
        self.status = status
        self.error = error
        self.reason = reason

        if error and reason:
            msg = "{}: {}".format(error, reason)
        elif error or reason:
            msg = error or reason
        else:
            msg = client.responses.get(status, 'Unknown Status')

        super(HTTPError, self).__init__(msg)


class PreconditionFailed(HTTPError):
    """
    Exception raised when a 412 HTTP error is received in response to a
    request.
    """


class ResourceConflict(HTTPError):
    """
    Exception raised when a 409 HTTP error is received in response to a
    request, usually a document revision conflict.
    """


class ResourceNotFound(HTTPError):
    """
    Exception raised when a 404 HTTP error is received in response to a
    request.
    """


class Unauthorized(HTTPError):
    """
    Exception raised when the server requires authentication credentials
    but either none are provided, or they are incorrect (HTTP 401).
    """


class ServerError(HTTPError):
    """
    Exception raised when an HTTP error >= 500 is received in response to a
    request.
    """


STATUS_ERRORS = {
    401: Unauthorized,
    404: ResourceNotFound,
    409: ResourceConflict,
    412: PreconditionFailed,
}


class Headers(dict):
    """
    A simple dict implementation that ensures header names (the dict's keys)
    are always stored as lower-case, but always returned in their correct
    capitalized format from an iterator or any methods that return keys.
    """

    def __init__(self, *args, **kwargs):
        dict.__init__(self)
        self.update(*args, **kwargs)

    @staticmethod
    def _format(key:str) -> str:
        items = list(part.capitalize() for part in key.split('-'))

        for name in ('Md5', 'Te', 'P3p', 'Www'):
            if name in items:
                items[items.index(name)] = name.upper()

        if 'Etag' in items:
            items[items.index('Etag')] = 'ETag'

        return "-".join(items)

    def __getitem__(self, key:str) -> object:
        return dict.__getitem__(self, key.lower())

    def __setitem__(self, key:str, value:object):
        return dict.__setitem__(self, key.lower(), value)

    def __contains__(self, key:str) -> bool:
        return dict.__contains__(self, key.lower())

    def __delitem__(self, key:str):
        return dict.__delitem__(self, key.lower())

    def __iter__(self) -> iter:
        return iter(self.keys())

    def copy(self):
        return Headers(dict.items(self))

    def get(self, key:str, default:object=None) -> object:
        return dict.get(self, key.lower(), default)

    def items(self) -> iter([(str, object)]):
        for k, v in dict.items(self):
            yield Headers._format(k), v

    def keys(self) -> iter([str]):
        for k in dict.keys(self):
            yield Headers._format(k)

    def pop(self, key:str, default:object=None) -> object:
        return dict.pop(self, key.lower(), default)

    def setdefault(self, key:str, default:object=None) -> object:
        return dict.setdefault(self, key.lower(), default)

    def update(self, *args, **kwargs):
        for key, value in dict(*args, **kwargs).items():
            self[key] = value


class Body:
    """
    The body of a response, wrapping the transport's data stream.

    Read failures are raised as :exc:`.TransportError` and close the body.
    The underlying stream is closed exactly once, no matter how often
    :meth:`.close` is called.
    """

    def __init__(self, stream, method:str=None, url:str=None):
        """
        :param stream: The transport's file-like response data or ``None``
                       for an empty body.
        :param method: The request method, for error messages.
        :param url: The request URL, for error messages.
        """
        self.stream = stream
        self.method = method
        self.url = url
        self._closed = stream is None

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def read(self, number:int=-1) -> bytes:
        """
        Read a *number* of `bytes` of the stream or all that is left if
        *number* is negative; returns an empty `bytes` at the end of the
        stream or once the body is closed.
        """
        if self._closed:
            return b''

        try:
            if number is None or number < 0:
                return self.stream.read()
            else:
                return self.stream.read(number)
        except (OSError, client.HTTPException) as e:
            self.close()
            raise TransportError(e, self.method, self.url) from e

    def readAll(self) -> bytes:
        """
        Read the entire (remaining) stream and close the body.
        """
        try:
            return self.read()
        finally:
            self.close()

    def close(self):
        """
        Close the stream.
        """
        if not self._closed:
            self._closed = True
            self.stream.close()

    @property
    def closed(self) -> bool:
        """
        ``True`` if the body is closed.
        """
        return self._closed


def _ErrorEnvelope(raw:bytes) -> (str, str):
    """
    Return the ``error`` and ``reason`` strings of a JSON error body, or
    ``None`` values if *raw* is no such message.
    """
    try:
        data = DecodeJson(raw.decode('utf-8', 'replace'))
    except ValueError:
        return None, None

    if not isinstance(data, dict):
        return None, None

    error, reason = data.get('error'), data.get('reason')
    error = error if isinstance(error, str) and error else None
    reason = reason if isinstance(reason, str) and reason else None
    return error, reason


def Classify(response:Response) -> Response:
    """
    Return the *response* if its status indicates success (2xx), with its
    body left unread; otherwise drain and close the body, and raise the
    matching :exc:`.HTTPError`.

    :raise HTTPError: Any of the documented HTTP errors, depending on the
                      status code.
    :raise TransportError: If the error body could not be read.
    """
    status = response.status

    if 200 <= status < 300:
        return response

    raw = response.data.readAll() if response.data is not None else b''
    error, reason = _ErrorEnvelope(raw) if raw else (None, None)

    if status in STATUS_ERRORS:
        Error = STATUS_ERRORS[status]
    elif status >= 500:
        Error = ServerError
    else:
        Error = HTTPError

    #noinspection PyArgumentList
    raise Error(status, error, reason)


def ReadJson(response:Response) -> Response:
    """
    Read and close the :class:`.Body` of a *response*, and return the
    response with the data decoded from JSON.

    :raise DecodeError: If the response data is not JSON.
    :raise TransportError: If the body could not be read.
    """
    raw = response.data.readAll()

    try:
        json = DecodeJson(raw.decode('utf-8'))
    except ValueError as e:
        raise DecodeError(str(e)) from e

    return response._replace(data=json)


class ResponseStream:
    """
    The data of an HTTP response from a :class:`.Session`.

    Once the stream is closed, the connection goes back into the session's
    pool if the response was read completely, and is discarded otherwise.
    """

    def __init__(self, resp:client.HTTPResponse, release=None):
        """
        :param resp: The actual :class:`http.client.HTTPResponse`.
        :param release: A callable receiving a `bool` that tells if the
                        underlying connection is reusable; called on close.
        """
        self.resp = resp
        self.release = release
        self._closed = False

    def read(self, number:int=None) -> bytes:
        """
        Read a *number* of `bytes` of the stream (all, if ``None``).
        """
        return self.resp.read(number)

    def close(self):
        """
        Close the stream.
        """
        if not self._closed:
            self._closed = True
            # a fully read HTTPResponse has already closed itself
            reusable = self.resp.isclosed()
            self.resp.close()
            if self.release: self.release(reusable)

    @property
    def closed(self) -> bool:
        """
        ``True`` if the stream is closed.
        """
        return self._closed


class Request:

    def __init__(self, method:str, url:str, body:bytes=None,
                 headers:Headers=None):
        self.body = body
        self.method = method
        self.split_url = urlsplit(url, scheme='http')
        self.L = logging.getLogger(
            "Request({} {}://{})".format(method, self.split_url.scheme,
                                         self.split_url.netloc)
        )
        self._headers = Headers(headers) if headers else Headers()
        self._selector = urlunsplit(('', '') + self.split_url[2:4] + ('',))
        self._initHeaders()

    def _initHeaders(self):
        self._headers.setdefault('Accept', JSON_TYPE)
        self._headers.setdefault('User-Agent', USER_AGENT)

        if not self.body:
            self._headers['Content-Length'] = '0'

    def send(self, conn:client.HTTPConnection) -> client.HTTPResponse:
        self.L.debug("selector: %s", self._selector)
        self.L.debug("headers: %s", self._headers)
        conn.request(self.method, self._selector, self.body,
                     dict(self._headers.items()))
        return conn.getresponse()


class Session(object):
    """
    The default transport: an HTTP client session with a connection pool.

    Requests are never retried.
    """

    def __init__(self, timeout:float=None, max_redirects:int=5):
        """
        Initialize an HTTP client session.

        :param timeout: Socket timeout in number of seconds, or `None` for no
                        timeout.
        :param max_redirects: The max. number of redirects before raising a
                              :exc:`.RedirectLimitExceeded` exception.
        """
        self.timeout = timeout
        self.max_redirects = max_redirects
        self.perm_redirects = {} # { url: url }
        self.pool = defaultdict(list) # HTTP conn pool by (scheme, netloc)
        self.lock = Lock()

    def request(self, method:str, url:str, body:bytes=None,
                headers:dict=None, num_redirects:int=0) -> Response:
        """
        Make a *method* request to *url*.

        :param method: "GET", "POST", "DELETE", "PUT", or "HEAD"
        :param url: The full URL for the request.
        :param body: The body, as `bytes` or ``None``.
        :param headers: A mapping of extra HTTP headers to send.
        :param num_redirects: The number of times this request has been
                              redirected already (counter).
        :return: A :class:`.Response` with an unread :class:`.ResponseStream`
                 as data.
        :raises OSError: If a socket error occurred.
        :raises http.client.HTTPException: If the response was broken.
        :raises RedirectLimitExceeded: If too many redirects occurred.
        :raises ValueError: If the URL scheme is not supported (only http and
                            https are).
        """
        if url in self.perm_redirects:
            url = self.perm_redirects[url]

        request = Request(method, url, body, headers)
        conn = self._getConnection(request.split_url)

        try:
            response = request.send(conn)
        except Exception:
            conn.close()
            raise

        L = logging.getLogger(
            "Response({} {}://{})".format(request.method,
                                          request.split_url.scheme,
                                          request.split_url.netloc)
        )
        status = response.status
        L.debug("HTTP %s (%s)", client.responses.get(status, '?'), status)
        L.debug("headers: %s", response.getheaders())

        if status == 303 or \
           method in ('GET', 'HEAD') and status in (301, 302, 307):
            response.read()
            self._returnConnection(request.split_url, conn)

            if num_redirects >= self.max_redirects:
                #noinspection PyExceptionInherit,PyArgumentList
                raise RedirectLimitExceeded('redirection limit exceeded')

            location = urljoin(url, response.getheader('Location'))

            if status == 301:
                self.perm_redirects[url] = location
            elif status == 303:
                method, body = 'GET', None

            L.debug("%s: redirected to %s", url, location)
            return self.request(method, location, body, headers,
                                num_redirects=num_redirects + 1)

        release = partial(self._releaseConnection, request.split_url, conn)
        return Response(status, response.msg,
                        ResponseStream(response, release))

    def _connectTo(self, url:namedtuple) -> client.HTTPConnection:
        if url.scheme == 'http':
            Connection = client.HTTPConnection
        elif url.scheme == 'https':
            Connection = client.HTTPSConnection
        else:
            raise ValueError('scheme {} not supported'.format(url.scheme))

        conn = Connection(url.netloc, timeout=self.timeout)
        conn.connect()
        return conn

    def _getConnection(self, url:namedtuple) -> client.HTTPConnection:
        """
        Return an open connection to the given scheme and netloc in the
        **split** *URL*.

        Returns a :class:`http.client.HTTPSConnection` if `url.scheme` is
        ``'https'``.
        """
        conn = None

        with self.lock:
            conns = self.pool[(url.scheme, url.netloc)]

            while conns:
                conn = conns.pop()
                if conn.sock: break

        if not (conn and conn.sock):
            conn = self._connectTo(url)

        return conn

    def _releaseConnection(self, url:namedtuple, conn:client.HTTPConnection,
                           reusable:bool):
        if reusable:
            self._returnConnection(url, conn)
        else:
            conn.close()

    def _returnConnection(self, url:namedtuple, conn:client.HTTPConnection):
        with self.lock:
            self.pool[(url.scheme, url.netloc)].append(conn)


class Resource:
    """
    A web resource at a fixed base URL, using a transport to make requests.

    Instances are immutable and can be shared among threads.
    """

    def __init__(self, url:str, session=None, headers:dict=None):
        """
        Create a new web resource for a fixed base URL.

        :param url: The base URL for this resource.
        :param session: The transport to (re-)use; a new :class:`.Session`
                        if ``None``.
        :param headers: A set of constant headers to send.
        """
        if url.endswith('/'): url = url[:-1]
        self.url = url
        self.session = Session() if session is None else session
        self.headers = Headers() if headers is None else Headers(headers)
        self.L = logging.getLogger(__name__)

    def __repr__(self) -> str:
        return '<{} {}>'.format(type(self).__name__, self.url)

    def __call__(self, *segments:[str]):
        """
        Create a new instance from the current one, but append the *path*
        items to the current instance' URL.

        :param segments: One string per path element.
        :return: A new instance.
        :rtype: `Resource`
        """
        return type(self)(UrlJoin(self.url, segments), self.session,
                          self.headers)

    def delete(self, *path:[str], headers:dict=None,
               params:[(str, str)]=None) -> Response:
        """
        Make a DELETE request.

        :param path: The path segments.
        :param headers: Optional headers for the request.
        :param params: Optional query parameter pairs for the URL.
        :return: A `Response` named tuple.
        :rtype: :class:`.Response`
        """
        return self.request('DELETE', path, headers=headers, params=params)

    def deleteJson(self, *path:[str], headers:dict=None,
                   params:[(str, str)]=None) -> Response:
        """
        Make a DELETE request, expecting a JSON response.

        :rtype: :class:`.Response`, with the :attr:`Response.data` decoded
                to a Python object.
        :raise DecodeError: If the response data is not JSON.
        """
        _, headers = self._prepareJson(None, headers)
        response = self.delete(*path, headers=headers, params=params)
        return self._decodeJson(response)

    def get(self, *path:[str], headers:dict=None,
            params:[(str, str)]=None) -> Response:
        """
        Make a GET request.

        :param path: The path segments.
        :param headers: Optional headers for the request.
        :param params: Optional query parameter pairs for the URL.
        :return: A `Response` named tuple.
        :rtype: :class:`.Response`
        """
        return self.request('GET', path, headers=headers, params=params)

    def getJson(self, *path:[str], headers:dict=None,
                params:[(str, str)]=None) -> Response:
        """
        Make a GET request, expecting a JSON response.

        :rtype: :class:`.Response`, with the :attr:`Response.data` decoded
                to a Python object.
        :raise DecodeError: If the response data is not JSON.
        """
        _, headers = self._prepareJson(None, headers)
        response = self.get(*path, headers=headers, params=params)
        return self._decodeJson(response)

    def post(self, *path:[str], body:bytes=None, headers:dict=None,
             params:[(str, str)]=None) -> Response:
        """
        Make a POST request.

        :param path: The path segments.
        :param body: The request body as `bytes`.
        :param headers: Optional headers for the request.
        :param params: Optional query parameter pairs for the URL.
        :return: A `Response` named tuple.
        :rtype: :class:`.Response`
        """
        return self.request('POST', path, body, headers, params)

    def postJson(self, *path:[str], json:object=None, headers:dict=None,
                 params:[(str, str)]=None) -> Response:
        """
        Make a POST request, expecting a JSON response.

        :param json: A Python object that can be serialized to JSON.
        :rtype: :class:`.Response`, with the :attr:`Response.data` decoded
                to a Python object.
        :raise ValidationError: If *json* cannot be serialized.
        :raise DecodeError: If the response data is not JSON.
        """
        json, headers = self._prepareJson(json, headers)
        response = self.post(*path, body=json, headers=headers, params=params)
        return self._decodeJson(response)

    def put(self, *path:[str], body:bytes=None, headers:dict=None,
            params:[(str, str)]=None) -> Response:
        """
        Make a PUT request.

        :param path: The path segments.
        :param body: The request body as `bytes`.
        :param headers: Optional headers for the request.
        :param params: Optional query parameter pairs for the URL.
        :return: A `Response` named tuple.
        :rtype: :class:`.Response`
        """
        return self.request('PUT', path, body, headers, params)

    def putJson(self, *path:[str], json:object=None, headers:dict=None,
                params:[(str, str)]=None) -> Response:
        """
        Make a PUT request, expecting a JSON response.

        :param json: A Python object that can be serialized to JSON.
        :rtype: :class:`.Response`, with the :attr:`Response.data` decoded
                to a Python object.
        :raise ValidationError: If *json* cannot be serialized.
        :raise DecodeError: If the response data is not JSON.
        """
        json, headers = self._prepareJson(json, headers)
        response = self.put(*path, body=json, headers=headers, params=params)
        return self._decodeJson(response)

    @staticmethod
    def _decodeJson(response:Response) -> Response:
        return ReadJson(response)

    @staticmethod
    def _prepareJson(json:object, headers:dict) -> (bytes, Headers):
        if json is not None:
            try:
                json = EncodeJson(json)
            except (TypeError, ValueError) as e:
                raise ValidationError(str(e)) from e

        headers = Headers(headers) if headers else Headers()
        headers.setdefault('Content-Type', JSON_TYPE)
        headers.setdefault('Accept', JSON_TYPE)
        return json, headers

    def request(self, method:str, path:list, body:bytes=None,
                headers:dict=None, params:[(str, str)]=None) -> Response:
        """
        Make a request to the resource, returning the classified
        :class:`.Response`, with a :class:`.Body` as its data.

        :raise TransportError: If the transport failed.
        :raise HTTPError: If the server responded with an error status.
        """
        all_headers = self.headers.copy()
        if headers: all_headers.update(headers)
        url = UrlJoin(self.url, path, params)
        self.L.debug("%s %s", method, url)

        try:
            response = self.session.request(method, url, body=body,
                                            headers=all_headers)
        except (OSError, client.HTTPException) as e:
            raise TransportError(e, method, url) from e

        response = response._replace(data=Body(response.data, method, url))
        return Classify(response)
