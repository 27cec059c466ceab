"""
.. py:module:: couchrelay.serializer
   :synopsis: JSON data serializer.

.. moduleauthor:: Florian Leitner <florian.leitner@gmail.com>
.. License: GNU Affero GPL v3 (http://www.gnu.org/licenses/agpl.html)

Thin configuration layer over the json package in the standard library
with settings optimized for speed and compact request bodies.
"""

from json.encoder import JSONEncoder
from json.decoder import JSONDecoder

__all__ = ['Decode', 'Encode', 'EncodeBytes', 'RawDecode']


def IsoformatSerializer(obj):
    """
    Serialization of any object that has a `isoformat()` method to JSON,
    particularly for date and time objects.
    """
    if hasattr(obj, 'isoformat'):
        return obj.isoformat()
    else:
        raise TypeError("Object of type {} is not JSON serializable".format(
            type(obj).__name__
        ))


# Pre-load encoder/decoder instances with the fastest possible performance and
# most compact encoding. A circular reference raises a ValueError.
DECODER = JSONDecoder()

ENCODER = JSONEncoder(separators=(',', ':'), allow_nan=False,
                      default=IsoformatSerializer)


def Decode(string:str) -> object:
    """
    Decode a JSON *string* to a Python object.

    Contrary to :func:`.Encode`, it does not de-serialize date and time strings
    to `datetime` objects.
    """
    return DECODER.decode(string)


def RawDecode(string:str, idx:int=0) -> (object, int):
    """
    Decode the JSON value starting exactly at *idx* in *string*, returning
    the value and the index where it ended.
    """
    return DECODER.raw_decode(string, idx)


def Encode(obj:object) -> str:
    """
    Encode basic Python objects as the most compact JSON strings.

    In particular, the encoder also iso-formats date and time objects
    according to `ISO 8601 <http://en.wikipedia.org/wiki/ISO_8601>`_.

    :raise TypeError: If *obj* contains values that cannot be serialized.
    :raise ValueError: If *obj* contains NaN or infinite floats or a
                       circular reference.
    """
    return ENCODER.encode(obj)


def EncodeBytes(obj:object) -> bytes:
    """
    Encode *obj* as compact JSON and return the UTF-8 `bytes`.
    """
    return Encode(obj).encode('utf-8')
