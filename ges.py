import argparse
import asyncio
import contextlib
import enum
import logging
import random
import re
import signal
import string
import sys
import time
import zlib
from dataclasses import dataclass, field

VERSION = "v0.0.1"

# Conf
DEADLINE = 1.0  # Seconds allowed for each read/write step
READ_BUFFER = 128  # Scratch buffer for draining whatever the client sends first

# The base64 charset, so every line looks like part of an encoded banner
ALPHABET = (string.ascii_letters + string.digits + "+/").encode()
SUFFIX = b"==\n"

LOG_FORMAT = "%(asctime)s - %(message)s"

# Transport errors the event loop reports when a trapped client drops abruptly
_SUPPRESSED = (ConnectionResetError, ConnectionAbortedError, BrokenPipeError)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_BARE_SECONDS = re.compile(r"\d+(?:\.\d*)?|\.\d+")


@dataclass(frozen=True)
class Config:
    max_delay: float = 3.0
    addr: str = ":2222"
    line_length: int = 1400

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        return cls(max_delay=args.delay, addr=args.addr, line_length=args.length)


def split_addr(addr: str) -> tuple:
    """Split ``host:port`` into a (host, port) pair for asyncio.start_server.

    An empty host (``":2222"``) means every interface and comes back as None.
    IPv6 hosts may be wrapped in brackets.
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not port.isdigit() or int(port) > 65535:
        raise ValueError(f"invalid port in address {addr!r}")
    return host or None, int(port)


def parse_duration(text: str) -> float:
    """Parse ``"3s"``, ``"500ms"``, ``"1m30s"`` or a bare number into seconds."""
    text = text.strip()
    if _BARE_SECONDS.fullmatch(text):
        return float(text)
    if not text:
        raise ValueError("empty duration")
    total, pos = 0.0, 0
    while pos < len(text):
        match = _DURATION_PART.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    return total


def random_data(amount, rng=random) -> bytes:
    # At least one random byte, then "==" and a newline
    amount = max(int(amount), len(SUFFIX) + 1)
    body = bytes(rng.choice(ALPHABET) for _ in range(amount - len(SUFFIX)))
    return body + SUFFIX


def conn_id(remote: str, now=None) -> str:
    # Only used to tie log lines together, collisions don't matter
    if now is None:
        now = time.time()
    return f"{zlib.adler32(f'{remote}{int(now)}'.encode()):x}"


def format_peer(peername) -> str:
    if not peername:
        return "unknown"
    if isinstance(peername, str):
        return peername
    host, port = peername[0], peername[1]
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


@dataclass
class Session:
    id: str
    remote: str
    start: float = field(default_factory=time.monotonic)
    written: int = 0

    def elapsed(self) -> float:
        return time.monotonic() - self.start


class Phase(enum.Enum):
    DRAIN = "drain"
    STALL = "stall"
    DONE = "done"


class Connection:
    """One tarpitted client: drain whatever it sent, then stall it forever.

    The reader and writer only need the asyncio stream methods used here,
    so tests can hand in fakes instead of a live socket.
    """

    def __init__(self, reader, writer, config: Config, rng=None):
        self.reader = reader
        self.writer = writer
        self.config = config
        self.rng = rng if rng is not None else random.Random()
        remote = format_peer(writer.get_extra_info("peername"))
        self.session = Session(id=conn_id(remote), remote=remote)
        self.phase = Phase.DRAIN

    @property
    def tag(self) -> str:
        return f"[{self.session.id}] {self.session.remote}"

    def next_length(self) -> int:
        return int(self.config.line_length * self.rng.random())

    def next_delay(self) -> float:
        return self.config.max_delay * self.rng.random()

    async def drain(self) -> Phase:
        # There should be nothing to read, but some clients talk first.
        # The whole phase shares one deadline so a chatty client can't extend it.
        loop = asyncio.get_running_loop()
        deadline = loop.time() + DEADLINE
        while True:
            remaining = max(0.0, deadline - loop.time())
            try:
                data = await asyncio.wait_for(self.reader.read(READ_BUFFER), remaining)
            except asyncio.TimeoutError:
                logging.info(f"{self.tag} Timeout")
                return Phase.STALL
            except OSError as e:
                logging.info(f"{self.tag} Read error, closing: {e}")
                return Phase.DONE
            if not data or len(data) >= READ_BUFFER:
                return Phase.STALL

    async def stall_once(self) -> Phase:
        # The client now waits for a banner that never completes
        if self.writer.is_closing():
            return Phase.DONE
        data = random_data(self.next_length(), self.rng)
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), DEADLINE)
        except asyncio.TimeoutError:
            logging.debug(f"{self.tag} Write timed out")
            return Phase.DONE
        except OSError as e:
            logging.debug(f"{self.tag} Write failed: {e!r}")
            return Phase.DONE
        self.session.written += len(data)
        delay = self.next_delay()
        logging.debug(f"{self.tag} Sent {len(data)} bytes, sleeping {delay:.3f}s")
        await asyncio.sleep(delay)
        return Phase.STALL

    async def run(self):
        logging.info(f"[{self.session.id}] Connection from {self.session.remote}")
        try:
            self.phase = await self.drain()
            while self.phase is Phase.STALL:
                self.phase = await self.stall_once()
        finally:
            self.phase = Phase.DONE
            logging.info(
                f"{self.tag} Connection closed, wrote {self.session.written} bytes "
                f"over {self.session.elapsed():.1f}s"
            )
            await self.close()

    async def close(self):
        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except (*_SUPPRESSED, OSError):
            pass


async def handle(reader, writer, config: Config):
    conn = Connection(reader, writer, config)
    try:
        await conn.run()
    except Exception as e:
        logging.error(f"{conn.tag} Error: {e!r}")


class Listener:
    def __init__(self, config: Config):
        self.config = config
        self.server = None
        self._loop = None
        self._orig_exception_handler = None
        self._stopped = asyncio.Event()

    @property
    def sockets(self):
        return self.server.sockets if self.server is not None else ()

    @property
    def port(self) -> int:
        return self.sockets[0].getsockname()[1]

    async def start(self) -> "Listener":
        host, port = split_addr(self.config.addr)
        self.server = await asyncio.start_server(self._on_connect, host, port)
        self._loop = asyncio.get_running_loop()
        self._orig_exception_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._exception_handler)
        return self

    async def _on_connect(self, reader, writer):
        await handle(reader, writer, self.config)

    def _exception_handler(self, loop, context):
        exc = context.get("exception")
        if isinstance(exc, _SUPPRESSED):
            return
        if context.get("message", "").startswith("socket.accept()"):
            # The loop would keep retrying; a failing accept() means we're done
            logging.error(f"accept() failed: {exc}")
            self.close()
            return
        if self._orig_exception_handler:
            self._orig_exception_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    async def serve(self):
        await self._stopped.wait()

    def close(self):
        # Handlers already running keep their sockets until their own I/O fails
        if self.server is not None:
            self.server.close()
        if self._loop is not None:
            self._loop.set_exception_handler(self._orig_exception_handler)
            self._loop = None
        self._stopped.set()


def _duration(text):
    try:
        return parse_duration(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _address(text):
    try:
        split_addr(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return text


def _length(text):
    if not text.isdigit():
        raise argparse.ArgumentTypeError(f"invalid line length {text!r}")
    return int(text)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="ges",
        description="Tarpit that keeps clients waiting for a login banner that never ends.",
    )
    parser.add_argument(
        "-d", "--delay", type=_duration, default=Config.max_delay,
        help="Maximum delay between sending random data to client (default 3s)",
    )
    parser.add_argument(
        "-a", "--addr", type=_address, default=Config.addr,
        help="IP addr:port to listen on (default :2222)",
    )
    parser.add_argument(
        "-l", "--length", type=_length, default=Config.line_length,
        help="Maximum length of line sent every [delay] seconds (default 1400)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every write")
    parser.add_argument("--version", action="version", version=f"ges {VERSION}")
    return parser.parse_args(argv)


async def run(config: Config) -> int:
    listener = Listener(config)
    try:
        await listener.start()
    except OSError as e:
        logging.critical(f"Could not listen on {config.addr}: {e}")
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows; Ctrl+C still arrives as KeyboardInterrupt
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, listener.close)

    logging.info(f"Tarpit active on port {listener.port}. Waiting for scanners...")
    await listener.serve()
    logging.info("Tarpit stopped.")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    config = Config.from_args(args)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO, format=LOG_FORMAT
    )
    logging.info(
        f"ges {VERSION} starting up. Listening on {config.addr}, "
        f"delay <={config.max_delay:g}s, line length <={config.line_length}"
    )
    try:
        return asyncio.run(run(config))
    except KeyboardInterrupt:
        logging.info("Tarpit stopped.")
        return 0


def cli():
    sys.exit(main())


if __name__ == "__main__":
    cli()
