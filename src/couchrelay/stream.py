"""
.. py:module:: couchrelay.stream
   :synopsis: Streaming decoder for view and listing results.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

View, ``_all_docs`` and similar listing responses are a single JSON object
with a few scalar fields (``total_rows``, ``offset``, ``update_seq``,
``warning``) and one array of row objects. A :class:`.RowStream` scans that
object incrementally from the response body and yields one :class:`.Row`
at a time, so only the current row is ever held in memory:

>>> from io import BytesIO
>>> rows = RowStream(BytesIO(b'{"total_rows":2,"offset":0,"rows":['
...                          b'{"id":"a","key":"a","value":1},'
...                          b'{"id":"b","key":"b","value":2}]}'))
>>> [row.id for row in rows]
['a', 'b']
>>> rows.total_rows
2

JSON objects are unordered, so the scalar fields may also follow the rows
array; their values are only guaranteed once all rows have been consumed.
"""
from collections import namedtuple
import codecs
import re

from couchrelay.network import CHUNK_SIZE, DecodeError
from couchrelay.serializer import RawDecode
from couchrelay.versions import UpdateSeq

__all__ = ['Row', 'RowStream']

WHITESPACE = re.compile(r'[ \t\n\r]*')
NUMBER_TAIL = re.compile(r'[0-9.eE+-]*')


class Row(namedtuple("Row", "id key value doc error")):
    """
    A row of a view or listing result.

    .. attribute:: id

        The associated document ID, or ``None`` (eg., reduce results).

    .. attribute:: key

        The raw JSON of the row's key, as `bytes`.

    .. attribute:: value

        The raw JSON of the row's value, as `bytes`, or ``None``.

    .. attribute:: doc

        The raw JSON of the associated document, as `bytes`; only present
        when the query used ``include_docs=True``, otherwise ``None``.

    .. attribute:: error

        The error message for this row (eg., "not_found"), or ``None``.
    """

    __slots__ = ()

    def __repr__(self) -> str:
        items = ['%s=%r' % (k, getattr(self, k))
                 for k in ('id', 'key', 'error', 'value')
                 if getattr(self, k) is not None]
        return '<%s %s>' % (type(self).__name__, ', '.join(items))


class RowStream:
    """
    A forward-only iterator over the rows in a listing response body.

    Iteration ends with :exc:`StopIteration` once the rows array has been
    consumed. Malformed JSON raises a :exc:`.DecodeError` and ends the
    stream; read failures of the body raise a
    :exc:`.network.TransportError`. The body is closed when the stream ends
    for any reason, when :meth:`.close` is called, when a ``with`` block
    exits, or as soon as the last reference to the stream is dropped, but
    never more than once.

    A stream must not be used by several threads at the same time.
    """

    def __init__(self, body, rows_field:str='rows'):
        """
        :param body: A binary file-like object (``read(n)`` and ``close()``),
                     usually a :class:`.network.Body`.
        :param rows_field: The name of the field holding the rows array.
        """
        self._closed = False
        self.body = body
        self.rows_field = rows_field
        # no reference from the scanner back to the stream
        self._scanner = _Scanner(body, rows_field)
        self._rows = self._scanner.rows()

    def __del__(self):
        if not getattr(self, '_closed', True):
            self.close()

    def __repr__(self) -> str:
        return '<%s %s%s>' % (type(self).__name__, self.rows_field,
                              ' (closed)' if self._closed else '')

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def __iter__(self):
        return self

    def __next__(self) -> Row:
        if self._closed:
            raise StopIteration

        try:
            return next(self._rows)
        except BaseException:
            self.close()
            raise

    def close(self):
        """
        Stop the iteration and close the body; idempotent.
        """
        if not self._closed:
            self._closed = True
            self._rows.close()
            self._scanner.clear()
            self.body.close()

    @property
    def closed(self) -> bool:
        """
        ``True`` if the stream is closed.
        """
        return self._closed

    @property
    def total_rows(self) -> int:
        """
        The total number of rows in the view, as far as scanned (or ``0``).
        """
        return self._scanner.total_rows

    @property
    def offset(self) -> int:
        """
        The offset of the first returned row in the view, as far as scanned
        (or ``0``).
        """
        return self._scanner.offset

    @property
    def update_seq(self) -> str:
        """
        The update sequence of the database, as far as scanned (or ``''``).
        """
        return self._scanner.update_seq

    @property
    def warning(self) -> str:
        """
        The server's warning message, as far as scanned (or ``''``).
        """
        return self._scanner.warning


class _Scanner:
    """
    The scanner state of a :class:`.RowStream`: the body, the decoded text
    buffer, and the metadata found so far.
    """

    def __init__(self, body, rows_field:str):
        self.body = body
        self.rows_field = rows_field
        self.total_rows = 0
        self.offset = 0
        self.update_seq = ''
        self.warning = ''
        self._buf = ''
        self._pos = 0
        self._eof = False
        self._decoder = codecs.getincrementaldecoder('utf-8')()

    def clear(self):
        self._buf = ''
        self._pos = 0

    def rows(self):
        self._expect('{')

        if self._peek() == '}':
            self._pos += 1
        else:
            while True:
                name = self._name()
                self._expect(':')

                if name == self.rows_field:
                    yield from self._scanRows()
                else:
                    value, _ = self._value()
                    self._setMeta(name, value)

                if self._expect(',}') == '}':
                    break

        self._drain()

    def _scanRows(self):
        if self._peek() == 'n':
            value, raw = self._value()
            if value is not None:
                raise DecodeError("expected an array for {!r}, got {}".format(
                    self.rows_field, raw
                ))
            return

        self._expect('[')

        if self._peek() == ']':
            self._pos += 1
            return

        while True:
            yield self._row()
            self._compact()

            if self._expect(',]') == ']':
                return

    def _row(self) -> Row:
        members = {}
        self._expect('{')

        if self._peek() == '}':
            self._pos += 1
        else:
            while True:
                name = self._name()
                self._expect(':')
                members[name] = self._value()

                if self._expect(',}') == '}':
                    break

        def raw(name):
            return members[name][1].encode('utf-8') if name in members \
                else None

        def text(name):
            value = members[name][0] if name in members else None
            return value if value is None or isinstance(value, str) \
                else members[name][1]

        return Row(id=text('id'), key=raw('key'), value=raw('value'),
                   doc=raw('doc'), error=text('error'))

    def _setMeta(self, name:str, value:object):
        if name == 'total_rows':
            self.total_rows = self._count(name, value)
        elif name == 'offset':
            self.offset = self._count(name, value)
        elif name == 'update_seq':
            self.update_seq = UpdateSeq(value)
        elif name == 'warning':
            if value is not None and not isinstance(value, str):
                raise DecodeError("warning is not a string: {!r}".format(value))
            self.warning = value or ''

    @staticmethod
    def _count(name:str, value:object) -> int:
        if value is None:
            return 0
        elif isinstance(value, int) and not isinstance(value, bool):
            return value
        else:
            raise DecodeError("{} is not an integer: {!r}".format(name, value))

    # TOKENS

    def _fill(self, size:int=CHUNK_SIZE) -> bool:
        """
        Append the next *size* bytes of the body to the buffer; ``False`` at
        EOF.
        """
        if self._eof:
            return False

        chunk = self.body.read(size)

        try:
            if chunk:
                self._buf += self._decoder.decode(chunk)
                return True

            self._eof = True
            self._buf += self._decoder.decode(b'', final=True)
            return False
        except UnicodeDecodeError as e:
            raise DecodeError(str(e)) from e

    def _compact(self):
        # drop consumed text once it outweighs the unread rest
        if self._pos * 2 >= len(self._buf):
            self._buf = self._buf[self._pos:]
            self._pos = 0

    def _drain(self):
        self.clear()

        while self._fill():
            self._buf = ''

    def _peek(self) -> str:
        """
        Skip whitespace and return the next character ('' at EOF).
        """
        while True:
            self._pos = WHITESPACE.match(self._buf, self._pos).end()

            if self._pos < len(self._buf):
                return self._buf[self._pos]
            elif not self._fill():
                return ''

    def _expect(self, chars:str) -> str:
        char = self._peek()

        if not char:
            raise DecodeError("unexpected end of JSON input, expected "
                              "{}".format(' or '.join(repr(c) for c in chars)))
        elif char not in chars:
            raise DecodeError("invalid character {!r} at {}, expected "
                              "{}".format(char, self._pos,
                                          ' or '.join(repr(c) for c in chars)))

        self._pos += 1
        return char

    def _name(self) -> str:
        if self._peek() != '"':
            self._expect('"')

        name, _ = self._value()
        return name

    def _value(self) -> (object, str):
        """
        Decode the JSON value at the current position, returning it and its
        raw JSON text.

        Each retry on an incomplete value reads twice as much as the one
        before, so a large value is decoded a logarithmic number of times.
        """
        if not self._peek():
            raise DecodeError("unexpected end of JSON input")

        start = self._pos
        size = CHUNK_SIZE

        while True:
            try:
                value, end = RawDecode(self._buf, start)
            except ValueError as e:
                # incomplete values need more input
                if self._fill(size):
                    size *= 2
                    continue

                raise DecodeError(str(e)) from e

            # numbers at the end of the buffer might continue
            if isinstance(value, (int, float)) and \
                    NUMBER_TAIL.match(self._buf, end).end() == len(self._buf) \
                    and self._fill(size):
                size *= 2
                continue

            self._pos = end
            return value, self._buf[start:end]
