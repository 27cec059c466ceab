"""
.. py:module:: couchrelay.versions
   :synopsis: Normalization of server version differences.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

CouchDB 1.x reports update sequences as plain integers and database sizes as
the flat ``disk_size`` and ``data_size`` fields, while 2.x uses opaque string
sequence tokens and a nested ``sizes`` object. The functions here map both
shapes onto one result.
"""
from collections import namedtuple

from couchrelay.network import DecodeError

__all__ = ['Stats', 'StatsFromInfo', 'UpdateSeq']


Stats = namedtuple("Stats", "name doc_count deleted_count update_seq "
                            "disk_size active_size external_size")
"""
A named tuple of normalized database statistics.

.. attribute:: name

    The database name.

.. attribute:: doc_count

    The number of documents in the database.

.. attribute:: deleted_count

    The number of deleted documents.

.. attribute:: update_seq

    The current update sequence, as a `str`.

.. attribute:: disk_size

    The size of the database file on disk, in bytes.

.. attribute:: active_size

    The size of the live data in the database, in bytes.

.. attribute:: external_size

    The uncompressed size of the database contents, in bytes; ``0`` for
    servers that do not report it.
"""


def UpdateSeq(value:object) -> str:
    """
    Return the text form of an update sequence *value*, which might be a
    number (CouchDB 1.x) or an opaque string token (2.x).

    >>> UpdateSeq(31)
    '31'
    >>> UpdateSeq('13-g1AAAAEz')
    '13-g1AAAAEz'
    >>> UpdateSeq(None)
    ''

    :raise DecodeError: If *value* is neither a string nor an integer.
    """
    if value is None:
        return ''
    elif isinstance(value, str):
        return value
    elif isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    else:
        raise DecodeError("unexpected update sequence {!r}".format(value))


def _Int(info:dict, key:str) -> int:
    value = info.get(key)
    return value if isinstance(value, int) and not isinstance(value, bool) \
        else 0


def StatsFromInfo(info:dict) -> Stats:
    """
    Create the :class:`.Stats` from a decoded database information object.

    The nested ``sizes`` object is used if present, otherwise the flat
    ``disk_size`` and ``data_size`` fields; missing fields are zero.
    """
    sizes = info.get('sizes')

    if isinstance(sizes, dict):
        disk_size = _Int(sizes, 'file')
        active_size = _Int(sizes, 'active')
        external_size = _Int(sizes, 'external')
    else:
        disk_size = _Int(info, 'disk_size')
        active_size = _Int(info, 'data_size')
        external_size = 0

    return Stats(
        name=info.get('db_name') or '',
        doc_count=_Int(info, 'doc_count'),
        deleted_count=_Int(info, 'doc_del_count'),
        update_seq=UpdateSeq(info.get('update_seq')),
        disk_size=disk_size,
        active_size=active_size,
        external_size=external_size,
    )
