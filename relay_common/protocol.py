from typing import BinaryIO, Iterator, Optional

ENC = "utf-8"   # encoding for control lines
DELIM = b"\n"    # line delimiter
CHUNK_SIZE = 4096   # default size of one raw read while relaying a payload


class TruncatedPayloadError(EOFError):
    '''Raised when the stream ends before a declared byte span was fully read.'''

    def __init__(self, expected: int, received: int):
        super().__init__(f"stream ended after {received} of {expected} bytes")
        self.expected = expected
        self.received = received


def read_line(rfile: BinaryIO) -> Optional[str]:
    '''
    The function reads one newline-terminated text line from a binary stream.
    A single trailing carriage return is dropped, so CRLF peers work too.
    Input:
        - rfile: buffered binary reader (socket.makefile("rb") or io.BytesIO)
    Output:
        - str - the decoded line without its terminator
        - None - the stream is exhausted and no byte was read
    '''
    raw = rfile.readline()
    if not raw:
        # Zero bytes and EOF: the peer closed the connection.
        return None
    if raw.endswith(DELIM):
        raw = raw[:-1]
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode(ENC, errors="replace")


def encode_line(text: str) -> bytes:
    return text.encode(ENC) + DELIM


def write_line(wfile: BinaryIO, text: str) -> None:
    '''
    The function writes one text line and flushes it, so the peer sees it
    before the call returns.
    '''
    wfile.write(encode_line(text))
    wfile.flush()


def iter_exact(rfile: BinaryIO, size: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    '''
    The function yields raw chunks until exactly `size` bytes were produced.
    Input:
        - rfile: buffered binary reader shared with read_line
        - size: number of bytes announced by the peer
        - chunk_size: upper bound of a single chunk
    Output: iterator of non-empty bytes objects
    Raises TruncatedPayloadError when the stream ends first; chunks that
    were already yielded are not taken back.
    '''
    received = 0
    while received < size:
        # read1 returns whatever one underlying read provides (like recv)
        chunk = rfile.read1(min(chunk_size, size - received))
        if not chunk:
            raise TruncatedPayloadError(size, received)
        received += len(chunk)
        yield chunk


def read_exact(rfile: BinaryIO, size: int, chunk_size: int = CHUNK_SIZE) -> bytes:
    '''Read exactly `size` bytes or raise TruncatedPayloadError.'''
    buf = bytearray()
    for chunk in iter_exact(rfile, size, chunk_size):
        buf.extend(chunk)
    return bytes(buf)


def write_exact(wfile: BinaryIO, data: bytes) -> None:
    wfile.write(data)
    wfile.flush()


def drain(rfile: BinaryIO, size: int, chunk_size: int = CHUNK_SIZE) -> int:
    '''
    The function discards up to `size` bytes from the stream and returns how
    many were discarded. It stops early, without raising, at end of stream.
    '''
    discarded = 0
    try:
        for chunk in iter_exact(rfile, size, chunk_size):
            discarded += len(chunk)
    except TruncatedPayloadError:
        pass
    return discarded
