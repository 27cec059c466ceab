"""
.. py:module:: couchrelay.options
   :synopsis: Query option encoding.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

Options are passed to the database operations as keyword arguments of
arbitrary type. At the API edge, each one is converted to an :class:`.Option`,
a closed variant of the four types that can be put into a URL query string:

>>> Option.From('limit', 10)
Option(name='limit', kind='int', value=10)
>>> EncodeOptions({'keys': ['a', 'b'], 'descending': True, 'limit': 2})
[('keys', 'a'), ('keys', 'b'), ('descending', 'true'), ('limit', '2')]

Anything else is rejected before a request is ever built:

>>> EncodeOptions({'foo': b'bar'})
Traceback (most recent call last):
    ...
couchrelay.network.UnsupportedOptionType: cannot convert type bytes to a query parameter (option "foo")
"""
from collections import namedtuple

from couchrelay.network import UnsupportedOptionType

__all__ = ['BOOL', 'INT', 'STRING', 'STRING_LIST', 'Option', 'EncodeOptions']

STRING = 'str'
STRING_LIST = 'list'
BOOL = 'bool'
INT = 'int'


def _Kind(value:object) -> str:
    # bool is a subclass of int and must be tested first
    if isinstance(value, bool):
        return BOOL
    elif isinstance(value, int):
        return INT
    elif isinstance(value, str):
        return STRING
    elif isinstance(value, (list, tuple)) and \
            all(isinstance(i, str) for i in value):
        return STRING_LIST
    else:
        return None


class Option(namedtuple("Option", "name kind value")):
    """
    A named query option holding one of the supported value kinds.

    .. attribute:: name

        The query parameter name.

    .. attribute:: kind

        One of :data:`.STRING`, :data:`.STRING_LIST`, :data:`.BOOL`, or
        :data:`.INT`.

    .. attribute:: value

        The Python value; string lists are stored as tuples.
    """

    __slots__ = ()

    @classmethod
    def From(cls, name:str, value:object) -> 'Option':
        """
        Create an option from an arbitrary *value*.

        :raise UnsupportedOptionType: If the type of *value* is not one of
                                      `str`, `bool`, `int`, or a list/tuple
                                      of `str`.
        """
        kind = _Kind(value)

        if kind is None:
            raise UnsupportedOptionType(type(value), name)

        if kind == STRING_LIST:
            value = tuple(value)

        return cls(name, kind, value)

    def params(self) -> [(str, str)]:
        """
        Return the query parameter pairs for this option.

        String lists produce one pair per element, in order.
        """
        if self.kind == STRING_LIST:
            return [(self.name, item) for item in self.value]
        elif self.kind == BOOL:
            return [(self.name, 'true' if self.value else 'false')]
        elif self.kind == INT:
            return [(self.name, str(self.value))]
        else:
            return [(self.name, self.value)]


def EncodeOptions(options:dict) -> [(str, str)]:
    """
    Convert a mapping of *options* to an ordered list of query parameter
    pairs, following the mapping's own iteration order.

    :raise UnsupportedOptionType: If any value has an unsupported type.
    """
    params = []

    if options:
        for name, value in options.items():
            params.extend(Option.From(name, value).params())

    return params
