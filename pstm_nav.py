"""
pstm_nav.py -- Decode and merge ST Teseo $PSTMALMANAC / $PSTMEPHEM sentences.

Teseo receivers dump their navigation database as NMEA-style proprietary
sentences, one per satellite, each wrapping a hex-encoded binary record:

  $PSTMALMANAC,<satid>,<len>,<hex payload>*<hex checksum>
  $PSTMEPHEM,<satid>,<len>,<hex payload>*<hex checksum>

This module validates the sentence framing and checksum, extracts the
timing fields (week, toa / toe / toc) from the GPS, GLONASS and Galileo
binary layouts, and keeps the freshest record per satellite when several
dumps are merged.  The original sentence text is kept on every record so
merged output can be written back without re-encoding.
"""

import binascii
import collections
import enum
import re
import sys


# ---- Record types ----

class RecordKind(enum.Enum):
    ALMANAC = 'almanac'
    EPHEMERIS = 'ephemeris'


SENTENCE_KEYWORDS = {
    '$PSTMALMANAC': RecordKind.ALMANAC,
    '$PSTMEPHEM': RecordKind.EPHEMERIS,
}

# Declared length field value required for each record kind
EXPECTED_LENGTH = {
    RecordKind.ALMANAC: 40,
    RecordKind.EPHEMERIS: 64,
}

# Satellite id ranges (inclusive) used by Teseo to tag the constellation
GPS_IDS = range(1, 33)
GLONASS_IDS = range(33, 97)
GALILEO_IDS = range(301, 337)

MAX_SATELLITE_ID = 0xFFFF

# The length field is a signed 32-bit value on the wire
MIN_DECLARED_LENGTH = -(1 << 31)
MAX_DECLARED_LENGTH = (1 << 31) - 1

# system: constellation of the layout used to decode the record, chosen from
# the sentence's outer satellite id (None when no layout applies)
SatelliteRecord = collections.namedtuple(
    'SatelliteRecord',
    ['satellite_id', 'kind', 'week', 'toa', 'toe', 'toc', 'raw_text', 'system'],
    defaults=[None])

DecodedFields = collections.namedtuple(
    'DecodedFields',
    ['satellite_id', 'week', 'toa', 'toe', 'toc', 'svid', 'remainder', 'system'])

EMPTY_FIELDS = DecodedFields(0, 0, 0, 0, 0, 0, b'', None)


# ---- Errors ----

class SentenceError(ValueError):
    """A sentence that cannot be turned into a record (line is skipped)."""


class MalformedLine(SentenceError):
    pass


class UnknownRecordKeyword(SentenceError):
    pass


class InvalidSatelliteId(SentenceError):
    pass


class InvalidLength(SentenceError):
    pass


class HexDecodeError(SentenceError):
    pass


class ChecksumMismatch(SentenceError):
    pass


class IncorrectLength(SentenceError):
    pass


class IncomparableKinds(ValueError):
    """Raised when an almanac is compared against an ephemeris."""


# ---- Sentence tokenizer and checksum ----

_UNSIGNED_RE = re.compile(r'\+?[0-9]+')
_SIGNED_RE = re.compile(r'[+-]?[0-9]+')


def xor_checksum(text):
    """XOR-fold the character codes of `text` (NMEA style checksum)."""
    checksum = 0
    for b in text.encode('ascii'):
        checksum ^= b
    return checksum


def split_checksum(line):
    """Split a sentence into (checksummed content, checksum hex).

    The content is everything between the leading '$' and the first '*'.
    """
    if '*' not in line:
        raise MalformedLine("missing '*' checksum delimiter")
    content, checksum_hex = line.split('*', 1)
    return content[1:], checksum_hex


def _decode_hex(text, what):
    try:
        return binascii.unhexlify(text)
    except ValueError as e:
        raise HexDecodeError(f"failed to decode {what}: {e}") from None


def parse_sentence(line):
    """Parse one $PSTMALMANAC / $PSTMEPHEM sentence into a SatelliteRecord.

    Args:
        line: sentence text without line terminator

    Returns:
        SatelliteRecord (satellite_id 0 if the id is outside the GPS,
        GLONASS and Galileo ranges)

    Raises:
        SentenceError subclass describing why the line was rejected
    """
    fields = line.split(',')
    if len(fields) != 4:
        raise MalformedLine(f"expected 4 fields, got {len(fields)}")

    kind = SENTENCE_KEYWORDS.get(fields[0])
    if kind is None:
        raise UnknownRecordKeyword(f"unknown record {fields[0]!r}")

    if not _UNSIGNED_RE.fullmatch(fields[1]) or int(fields[1]) > MAX_SATELLITE_ID:
        raise InvalidSatelliteId(f"no sat id found in {fields[1]!r}")
    satellite_id = int(fields[1])

    if (not _SIGNED_RE.fullmatch(fields[2])
            or not MIN_DECLARED_LENGTH <= int(fields[2]) <= MAX_DECLARED_LENGTH):
        raise InvalidLength(f"no length found in {fields[2]!r}")
    declared_length = int(fields[2])

    record = fields[3].split('*')
    if len(record) != 2:
        raise MalformedLine("record field must be <payload>*<checksum>")
    payload = _decode_hex(record[0], 'record')
    checksum = _decode_hex(record[1], 'checksum')
    if len(checksum) != 1:
        raise HexDecodeError(f"checksum must be one byte, got {len(checksum)}")

    content, _ = split_checksum(line)
    computed = xor_checksum(content)
    if computed != checksum[0]:
        raise ChecksumMismatch(
            f"checksum failed: computed {computed:02X}, sentence has {checksum[0]:02X}")

    decoded = decode_payload(payload, kind, satellite_id, declared_length)

    return SatelliteRecord(
        satellite_id=decoded.satellite_id,
        kind=kind,
        week=decoded.week,
        toa=decoded.toa,
        toe=decoded.toe,
        toc=decoded.toc,
        raw_text=line,
        system=decoded.system,
    )


# ---- Binary record decoding ----

def constellation_for(satellite_id):
    """Map a Teseo satellite id to 'GPS', 'GLO', 'GAL' or None."""
    if satellite_id in GPS_IDS:
        return 'GPS'
    if satellite_id in GLONASS_IDS:
        return 'GLO'
    if satellite_id in GALILEO_IDS:
        return 'GAL'
    return None


def shift_or_zero(value, shift, bits):
    """Shift `value` left within a `bits` wide integer.

    A shift amount that does not fit the target width yields 0 instead of
    an undefined result; bits shifted past the top are dropped.
    """
    if shift >= bits:
        return 0
    return (value << shift) & ((1 << bits) - 1)


def le_u16(b, offset):
    """Little-endian 16-bit value from payload bytes at `offset`."""
    return (shift_or_zero(b[offset + 1], 8, 16) + b[offset]) & 0xFFFF


def _require(payload, nbytes, layout):
    if len(payload) < nbytes:
        raise IncorrectLength(
            f"{layout} payload has {len(payload)} bytes, needs at least {nbytes}")


def decode_gps_almanac(b):
    """GPS almanac: satid b0, week b2:b1, toa b3."""
    _require(b, 4, 'GPS almanac')
    return DecodedFields(
        satellite_id=b[0],
        week=le_u16(b, 1),
        toa=b[3],
        toe=0,
        toc=0,
        svid=0,
        remainder=bytes(b[4:]),
        system='GPS',
    )


def decode_gps_ephemeris(b, satellite_id):
    """GPS ephemeris: week b1:b0, toe b3:b2, toc b5:b4."""
    _require(b, 6, 'GPS ephemeris')
    # Remainder starts after toc. Older tooling sliced from byte 5, which
    # repeated the high byte of toc at the start of the remainder.
    return DecodedFields(
        satellite_id=satellite_id,
        week=le_u16(b, 0),
        toa=0,
        toe=le_u16(b, 2),
        toc=le_u16(b, 4),
        svid=0,
        remainder=bytes(b[6:]),
        system='GPS',
    )


def decode_glonass_almanac(b):
    """GLONASS almanac: satid b0, week b2:b1, toa b3."""
    _require(b, 4, 'GLONASS almanac')
    return DecodedFields(
        satellite_id=b[0],
        week=le_u16(b, 1),
        toa=b[3],
        toe=0,
        toc=0,
        svid=0,
        remainder=bytes(b[4:]),
        system='GLO',
    )


def decode_glonass_ephemeris(b, satellite_id):
    """GLONASS ephemeris: week b1:b0, toe from b3, b2 and b4."""
    _require(b, 5, 'GLONASS ephemeris')
    # toe is packed as b3:b2 nibble-shifted with b4 added on top, 32-bit sum
    toe = (shift_or_zero(b[3], 12, 32)
           + shift_or_zero(b[2], 4, 32)
           + b[4]) & 0xFFFFFFFF
    return DecodedFields(
        satellite_id=satellite_id,
        week=le_u16(b, 0),
        toa=0,
        toe=toe,
        toc=0,
        svid=0,
        remainder=bytes(b[5:]),
        system='GLO',
    )


def decode_galileo_almanac(b):
    """Galileo almanac: satid b1:b0, svid b2, week b4:b3, toa b5."""
    _require(b, 6, 'Galileo almanac')
    return DecodedFields(
        satellite_id=le_u16(b, 0),
        week=le_u16(b, 3),
        toa=b[5],
        toe=0,
        toc=0,
        svid=b[2],
        remainder=bytes(b[6:]),
        system='GAL',
    )


def decode_payload(payload, kind, satellite_id, declared_length):
    """Extract timing fields from a decoded PSTM payload.

    Args:
        payload: bytes decoded from the sentence hex field
        kind: RecordKind of the sentence
        satellite_id: satellite id from the sentence (selects the layout)
        declared_length: length field of the sentence, checked against kind

    Returns:
        DecodedFields; EMPTY_FIELDS (satellite id 0) when there is no
        layout for this constellation and kind
    """
    expected = EXPECTED_LENGTH[kind]
    if declared_length != expected:
        raise IncorrectLength(
            f"incorrect length {declared_length} for {kind.value} (expected {expected})")

    system = constellation_for(satellite_id)

    if kind is RecordKind.ALMANAC:
        if system == 'GPS':
            return decode_gps_almanac(payload)
        if system == 'GLO':
            return decode_glonass_almanac(payload)
        if system == 'GAL':
            return decode_galileo_almanac(payload)
    elif kind is RecordKind.EPHEMERIS:
        if system == 'GPS':
            return decode_gps_ephemeris(payload, satellite_id)
        if system == 'GLO':
            return decode_glonass_ephemeris(payload, satellite_id)

    return EMPTY_FIELDS


# ---- Freshness comparison ----

NEWER = 1
OLDER = -1
EQUAL = 0


def freshness_key(record):
    """Tuple ordering records of one kind from oldest to newest."""
    if record.kind is RecordKind.ALMANAC:
        return (record.week, record.toa)
    return (record.week, record.toe, record.toc)


def compare_freshness(candidate, stored):
    """Compare two records of the same kind.

    Returns:
        NEWER if candidate is more recent than stored, OLDER if it is less
        recent, EQUAL if all compared fields match
    """
    if candidate.kind is not stored.kind:
        raise IncomparableKinds(
            f"can't compare {candidate.kind.value} with {stored.kind.value}")
    a = freshness_key(candidate)
    b = freshness_key(stored)
    if a > b:
        return NEWER
    if a < b:
        return OLDER
    return EQUAL


# ---- Satellite registry ----

class SatelliteRegistry:
    """Newest known record per satellite id.

    Records are offered one at a time; a record replaces the stored one for
    its id only when it compares NEWER.  Satellite id 0 (no decodable
    layout) is never stored.
    """

    def __init__(self):
        self._records = {}

    def __len__(self):
        return len(self._records)

    def __contains__(self, satellite_id):
        return satellite_id in self._records

    def __iter__(self):
        return iter(self.records())

    def get(self, satellite_id):
        return self._records.get(satellite_id)

    def offer(self, record):
        """Offer a candidate record.

        Returns:
            'discarded' for satellite id 0, 'inserted' for a first sighting,
            'replaced' if the candidate is newer, 'kept' if the stored record
            is as new or newer, 'skipped' if the kinds differ
        """
        if record.satellite_id == 0:
            return 'discarded'

        stored = self._records.get(record.satellite_id)
        if stored is None:
            self._records[record.satellite_id] = record
            return 'inserted'

        try:
            cmp = compare_freshness(record, stored)
        except IncomparableKinds as e:
            print(f"  Warning: sat {record.satellite_id}: {e}, keeping stored record",
                  file=sys.stderr)
            return 'skipped'

        if cmp == NEWER:
            self._records[record.satellite_id] = record
            return 'replaced'
        return 'kept'

    def records(self):
        """Stored records in ascending satellite id order."""
        return [self._records[sv] for sv in sorted(self._records)]
