#!/usr/bin/env python3
"""
dnshole - hosts file based DNS blackhole

Fetches allowlists and blocklists of domain names, reconciles them into a
single sorted block list and rewrites a hosts file so that every blocked
domain resolves to 0.0.0.0.

Features:
- Concurrent fetching of local files and remote lists using requests
- Per-list field offsets (plain domain lists and hosts-format lists)
- Allowlists, including the hand-maintained part of the hosts file itself
- Safe in-place rewrite of the hosts file via a temporary file and rename
"""

import os
import sys
import io
import stat
import time
import logging
import argparse
import tempfile
import contextlib
from enum import Enum
from datetime import datetime
from typing import Iterator, List, Optional, Sequence, Set, TextIO, Tuple
from dataclasses import dataclass, field
from concurrent.futures import ThreadPoolExecutor, as_completed

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from tqdm import tqdm

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

# ============================================================================
# CONSTANTS
# ============================================================================

DEFAULT_CONFIG_FILE = "/etc/dnshole/dnshole.conf"
STDOUT_TARGET = "-"

DEFAULT_CONCURRENCY = 4

# Seconds
HANDSHAKE_TIMEOUT = 30
RESPONSE_HEADER_TIMEOUT = 30
REQUEST_TIMEOUT = 120

CHUNK_SIZE = 64 * 1024

USER_AGENT = f"dnshole/{__version__}"

MARKER_LINE = "# ==== dnshole ===="
NULL_ADDRESS = "0.0.0.0"

# Column of the host names in a hosts file line, 0-based
HOSTS_FIELD_OFFSET = 1

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# Names a hosts file must keep resolving, whatever the blocklists say
RESERVED_HOSTNAMES = frozenset([
    "localhost",
    "localhost.localdomain",
    "local",
    "broadcasthost",
    "ip6-localhost",
    "ip6-loopback",
    "ip6-localnet",
    "ip6-mcastprefix",
    "ip6-allnodes",
    "ip6-allrouters",
    "ip6-allhosts",
    "0.0.0.0",
])

# ============================================================================
# EXCEPTIONS
# ============================================================================


class DnsholeError(Exception):
    """Base class for dnshole errors."""


class ConfigError(DnsholeError):
    """Invalid configuration; always fatal."""


class FetchError(DnsholeError):
    """A remote list could not be retrieved; the run continues without it."""


# ============================================================================
# DATA CLASSES
# ============================================================================


class Role(Enum):
    """Whether a list exempts domains or nominates them for blocking."""
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class ListSource:
    """A single list of domains: where it lives and how to parse it."""
    location: str
    field_offset: int
    role: Role

    @property
    def is_url(self) -> bool:
        return "://" in self.location


@dataclass
class SourceResult:
    """Domains extracted from one source, or the reason there are none."""
    source: ListSource
    domains: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Config:
    """Everything a run needs, read once from the command line and config file."""
    hosts_file: str
    output: str
    concurrency: int = DEFAULT_CONCURRENCY
    sources: Tuple[ListSource, ...] = ()
    insecure_ssl: bool = False
    config_file: str = DEFAULT_CONFIG_FILE

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")


@dataclass
class RunStats:
    """Summary of a completed run."""
    total_lists: int = 0
    successful: int = 0
    failed: int = 0
    allowed_domains: int = 0
    blocked_domains: int = 0
    elapsed_time: float = 0.0


# ============================================================================
# LINE PARSING
# ============================================================================


def extract_domains(line: str, field_offset: int) -> List[str]:
    """Return the domain names found on a list line.

    Anything from the first '#' on is a comment. The remaining text is split
    on whitespace and every field from field_offset to the end of the line is
    returned, so hosts-format lines like "0.0.0.0 a.com b.com" yield both names.
    """
    comment = line.find("#")
    if comment >= 0:
        line = line[:comment]

    fields = line.split()
    if field_offset >= len(fields):
        return []
    return fields[field_offset:]


def is_marker(line: str) -> bool:
    return line.startswith(MARKER_LINE)


# ============================================================================
# CONFIGURATION
# ============================================================================

LIST_DIRECTIVES = {
    "allowlist": Role.ALLOW,
    "whitelist": Role.ALLOW,
    "blocklist": Role.BLOCK,
    "blacklist": Role.BLOCK,
}


@dataclass
class ConfigFile:
    """Settings read from a dnshole configuration file."""
    concurrency: int = DEFAULT_CONCURRENCY
    sources: List[ListSource] = field(default_factory=list)


def _parse_list_directive(role: Role, fields: List[str], where: str) -> ListSource:
    if len(fields) != 3:
        raise ConfigError(f"{where}: wrong number of fields")
    try:
        offset = int(fields[1])
    except ValueError:
        raise ConfigError(f"{where}: non-numeric field index") from None
    if offset < 1:
        raise ConfigError(f"{where}: field index must be greater than 0")
    return ListSource(location=fields[2], field_offset=offset - 1, role=role)


def parse_config_line(line: str, settings: ConfigFile, filename: str, line_num: int) -> None:
    """Apply one configuration line to settings."""
    if not line.strip() or line.lstrip().startswith("#"):
        return

    where = f"{filename}:{line_num}"
    fields = line.split()
    directive = fields[0].lower()

    if directive in LIST_DIRECTIVES:
        settings.sources.append(_parse_list_directive(LIST_DIRECTIVES[directive], fields, where))
    elif directive == "concurrency":
        if len(fields) != 2:
            raise ConfigError(f"{where}: wrong number of fields")
        try:
            settings.concurrency = int(fields[1])
        except ValueError:
            raise ConfigError(f"{where}: non-numeric concurrency") from None
        if settings.concurrency < 1:
            raise ConfigError(f"{where}: concurrency must be greater than 0")
    else:
        raise ConfigError(f"{where}: unknown directive: {fields[0]}")


def load_config_file(filename: str) -> ConfigFile:
    """Read and validate a configuration file."""
    settings = ConfigFile()
    try:
        with open(filename, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                parse_config_line(line, settings, filename, line_num)
    except OSError as e:
        raise ConfigError(f"cannot read configuration file: {e}") from e

    logger.debug(f"Loaded {len(settings.sources)} lists from {filename}")
    return settings


def build_config(hosts_file: str, config_file: str = DEFAULT_CONFIG_FILE,
                 output: Optional[str] = None, insecure_ssl: bool = False) -> Config:
    """Combine the configuration file with command line settings.

    The hosts file itself is always added as an allowlist so that names the
    user maps by hand are never overridden.
    """
    settings = load_config_file(config_file)
    sources = list(settings.sources)
    sources.append(ListSource(hosts_file, HOSTS_FIELD_OFFSET, Role.ALLOW))

    return Config(
        hosts_file=hosts_file,
        output=output or hosts_file,
        concurrency=settings.concurrency,
        sources=tuple(sources),
        insecure_ssl=insecure_ssl,
        config_file=config_file,
    )


# ============================================================================
# FETCHING
# ============================================================================


class SourceFetcher:
    """Retrieves lists from local files or over HTTP(S).

    Remote failures are logged and reported in the result. Local files are
    expected to exist, so failing to read one raises OSError.
    """

    def __init__(self, insecure_ssl: bool = False, pool_size: int = DEFAULT_CONCURRENCY):
        self.insecure_ssl = insecure_ssl
        self.session = self._create_session(pool_size)

    def _create_session(self, pool_size: int) -> requests.Session:
        """Create a session that makes exactly one attempt per request."""
        session = requests.Session()
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=Retry(total=0, raise_on_status=False),
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers["User-Agent"] = USER_AGENT
        if self.insecure_ssl:
            session.verify = False
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        return session

    def fetch(self, source: ListSource) -> SourceResult:
        """Fetch one source and extract its domains."""
        if source.is_url:
            try:
                lines = self._read_url(source.location)
            except FetchError as e:
                logger.warning(f"Skipping list: {e}")
                return SourceResult(source, error=str(e))
        else:
            lines = self._read_file(source.location)

        domains: List[str] = []
        for line in lines:
            if source.role is Role.ALLOW and is_marker(line):
                break
            domains.extend(extract_domains(line, source.field_offset))

        logger.debug(f"  {source.location}: {len(domains):,} {source.role.value} domains")
        return SourceResult(source, domains)

    def _read_file(self, path: str) -> List[str]:
        with open(path, "r", encoding="utf-8", errors="ignore") as f:
            return f.readlines()

    def _read_url(self, url: str) -> List[str]:
        """GET url, returning its lines; raise FetchError on any failure."""
        deadline = time.monotonic() + REQUEST_TIMEOUT
        try:
            response = self.session.get(
                url,
                timeout=(HANDSHAKE_TIMEOUT, RESPONSE_HEADER_TIMEOUT),
                stream=True,
            )
            with response:
                if response.status_code != 200:
                    raise FetchError(f'Get "{url}" returned status {response.status_code}')

                body = bytearray()
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if time.monotonic() > deadline:
                        raise FetchError(f'Get "{url}": request exceeded {REQUEST_TIMEOUT}s')
                    body.extend(chunk)
                return body.decode("utf-8", errors="ignore").splitlines()
        except requests.RequestException as e:
            raise FetchError(f'Get "{url}": {e}') from e

    def close(self) -> None:
        self.session.close()


# ============================================================================
# DISPATCH
# ============================================================================


def fetch_all(sources: Sequence[ListSource], concurrency: int,
              fetcher: SourceFetcher, progress: bool = True) -> List[SourceResult]:
    """Fetch every source with at most `concurrency` fetches in flight.

    Each task fills only its own slot of the result list. Returns after every
    source has been attempted once. A fatal error in any task cancels the
    tasks not yet started and is re-raised.
    """
    if concurrency < 1:
        raise ConfigError(f"concurrency must be at least 1, got {concurrency}")

    logger.info(f"Fetching {len(sources)} lists with {concurrency} threads...")

    results: List[Optional[SourceResult]] = [None] * len(sources)
    executor = ThreadPoolExecutor(max_workers=concurrency)
    try:
        futures = {executor.submit(fetcher.fetch, source): i for i, source in enumerate(sources)}
        for future in tqdm(as_completed(futures), total=len(futures),
                           desc="Fetching", disable=not progress):
            results[futures[future]] = future.result()
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)

    return [result for result in results if result is not None]


# ============================================================================
# RECONCILIATION
# ============================================================================


def reserved_result() -> SourceResult:
    """An allow result covering names every hosts file needs."""
    source = ListSource("<reserved>", 0, Role.ALLOW)
    return SourceResult(source, sorted(RESERVED_HOSTNAMES))


def reconcile(results: Sequence[SourceResult]) -> List[str]:
    """Return the sorted domains that are blocked by some list and allowed by none."""
    allowed: Set[str] = set()
    for result in results:
        if result.source.role is Role.ALLOW:
            allowed.update(result.domains)

    blocked: Set[str] = set()
    for result in results:
        if result.source.role is Role.BLOCK:
            blocked.update(result.domains)

    return sorted(blocked - allowed)


# ============================================================================
# HOSTS FILE
# ============================================================================


def same_file(path_a: str, path_b: str) -> bool:
    try:
        return os.path.samefile(path_a, path_b)
    except OSError:
        return False


@contextlib.contextmanager
def open_destination(hosts_file: str, output: str) -> Iterator[TextIO]:
    """Open the place the new hosts file goes.

    "-" is standard output. When output is the hosts file itself, the new
    content goes to a temporary file in the same directory that replaces the
    hosts file only after it has been completely written and closed. If
    anything fails before then the hosts file is left as it was.
    """
    if output == STDOUT_TARGET:
        # Bypass the locale's encoding so undecodable prefix bytes pass through
        sys.stdout.flush()
        stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8",
                                  errors="surrogateescape", newline="", write_through=True)
        try:
            yield stdout
            stdout.flush()
        finally:
            stdout.detach()
        return

    if not same_file(hosts_file, output):
        with open(output, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            yield f
        return

    target = os.path.realpath(hosts_file)
    mode = stat.S_IMODE(os.stat(target).st_mode)
    fd, tmp_path = tempfile.mkstemp(
        dir=os.path.dirname(target),
        prefix=f".{os.path.basename(target)}.",
        suffix=".dnshole.tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, target)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise


def generated_header(now: Optional[datetime] = None) -> List[str]:
    """The marker line and comments that open the generated section."""
    if now is None:
        now = datetime.now().astimezone()
    return [
        f"{MARKER_LINE} Do not edit this line or following lines.\n",
        "# They are automatically generated by dnshole.\n",
        f"# Generated {now.strftime('%A %Y-%m-%d %H:%M:%S %Z')}\n",
        "\n",
    ]


def write_hosts_file(hosts_file: str, output: str, domains: Sequence[str],
                     now: Optional[datetime] = None) -> None:
    """Write hosts_file's hand-maintained part plus a fresh blocked section to output."""
    with open(hosts_file, "r", encoding="utf-8", errors="surrogateescape", newline="") as src:
        with open_destination(hosts_file, output) as dst:
            last_line = ""
            for line in src:
                if is_marker(line):
                    break
                if not line.endswith(("\n", "\r")):
                    line += "\n"
                dst.write(line)
                last_line = line

            if last_line.strip():
                dst.write("\n")

            dst.writelines(generated_header(now))
            for domain in domains:
                dst.write(f"{NULL_ADDRESS} {domain}\n")

    if output != STDOUT_TARGET:
        logger.info(f"Wrote {len(domains):,} blocked domains to {output}")


# ============================================================================
# PIPELINE
# ============================================================================


def run(config: Config, progress: bool = True) -> RunStats:
    """Fetch, reconcile and write; fatal errors propagate."""
    start_time = time.time()
    stats = RunStats(total_lists=len(config.sources))

    fetcher = SourceFetcher(insecure_ssl=config.insecure_ssl, pool_size=config.concurrency)
    try:
        results = fetch_all(config.sources, config.concurrency, fetcher, progress=progress)
    finally:
        fetcher.close()

    stats.successful = sum(1 for r in results if r.ok)
    stats.failed = stats.total_lists - stats.successful

    results.append(reserved_result())
    domains = reconcile(results)
    stats.allowed_domains = len({d for r in results if r.source.role is Role.ALLOW for d in r.domains})
    stats.blocked_domains = len(domains)

    write_hosts_file(config.hosts_file, config.output, domains)

    stats.elapsed_time = time.time() - start_time
    return stats


# ============================================================================
# CLI
# ============================================================================


def setup_logging(verbose: bool = False, quiet: bool = False,
                  log_file: Optional[str] = None) -> None:
    """Log to stderr, and to log_file when given."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def parse_arguments(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="dnshole",
        description="Block domains by redirecting them to 0.0.0.0 in a hosts file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument("hosts_file",
                        help="Hosts file to read and, by default, rewrite")
    parser.add_argument("-c", "--config", default=DEFAULT_CONFIG_FILE,
                        help="Configuration file")
    parser.add_argument("-o", "--output", default=None,
                        help='Output file, "-" means stdout (default is <hosts_file>)')
    parser.add_argument("-k", "--insecure-ssl", action="store_true",
                        help="Ignore problems with host security certificates")
    parser.add_argument("--log-file", default=None,
                        help="Also write log messages to this file")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Verbose logging")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="Quiet mode")
    parser.add_argument("--version", action="version", version=f"dnshole {__version__}")

    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function."""
    args = parse_arguments(argv)
    setup_logging(args.verbose, args.quiet, args.log_file)

    try:
        config = build_config(
            args.hosts_file,
            config_file=args.config,
            output=args.output,
            insecure_ssl=args.insecure_ssl,
        )
        stats = run(config, progress=not args.quiet)
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 1
    except (DnsholeError, OSError) as e:
        logger.error(f"Error: {e}")
        if args.verbose:
            logger.exception("Traceback:")
        return 1

    logger.info(f"Lists: {stats.total_lists} total, {stats.successful} fetched, {stats.failed} failed")
    logger.info(f"Allowed domains: {stats.allowed_domains:,}")
    logger.info(f"Blocked domains: {stats.blocked_domains:,}")
    logger.info(f"Runtime: {stats.elapsed_time:.2f} seconds")
    return 0


if __name__ == "__main__":
    sys.exit(main())
