from __future__ import annotations

from typing import IO, Iterator

import cbor2


def encode(obj) -> bytes:
    return cbor2.dumps(obj)


def decode(b: bytes):
    return cbor2.loads(b)


def iter_decode(fp: IO[bytes]) -> Iterator:
    """Yield each item of a CBOR sequence (RFC 8742) until EOF."""
    decoder = cbor2.CBORDecoder(fp)
    while True:
        try:
            yield decoder.decode()
        except cbor2.CBORDecodeEOF:
            return
