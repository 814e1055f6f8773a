#!/usr/bin/env python3
# -*- coding: utf-8 -*-

"""
doq_probe.py

Batch DNS-over-QUIC (DoQ) reachability probe for large IPv4 lists.

For every IPv4 in the input file, try a QUIC handshake advertising the DoQ
draft ALPN identifiers on the candidate ports (first success wins) and append
the address to the output file when a handshake completes.

Key defaults:
- ports: 784 then 8853 (legacy/experimental DoQ ports); --port853 -> 853 only
- ALPN: doq-i06 .. doq-i00, any of them counts as a match
- handshake timeout: 2s per port attempt, no retries
- parallel: 30 in-flight probes

Output:
- append-only text file, one reachable IPv4 per line (runs are cumulative)

DISCLAIMER:
- Use only on networks you own/administer or have explicit authorization to test.
"""

import argparse
import asyncio
import ipaddress
import logging
import ssl
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, List, Optional, TextIO, Tuple

from aioquic.asyncio import connect
from aioquic.quic.configuration import QuicConfiguration
from aioquic.quic.packet import QuicProtocolVersion


VERSION_DOQ_00 = "doq-i00"
VERSION_DOQ_01 = "doq-i01"
VERSION_DOQ_02 = "doq-i02"
VERSION_DOQ_03 = "doq-i03"
VERSION_DOQ_04 = "doq-i04"
VERSION_DOQ_05 = "doq-i05"
VERSION_DOQ_06 = "doq-i06"

# Most recent draft first; the peer picks one.
DEFAULT_DOQ_VERSIONS: Tuple[str, ...] = (
    VERSION_DOQ_06,
    VERSION_DOQ_05,
    VERSION_DOQ_04,
    VERSION_DOQ_03,
    VERSION_DOQ_02,
    VERSION_DOQ_01,
    VERSION_DOQ_00,
)

DEFAULT_QUIC_VERSIONS: Tuple[int, ...] = (QuicProtocolVersion.VERSION_1,)

DOQ_PORT = 853
LEGACY_DOQ_PORTS: Tuple[int, ...] = (784, 8853)

HANDSHAKE_TIMEOUT_S = 2.0
DEFAULT_PARALLEL = 30


# -----------------------------
# Target feed
# -----------------------------

def parse_ipv4(text: str) -> Optional[str]:
    """
    Return the canonical dotted-quad for an IPv4 literal, else None.

    IPv4-mapped IPv6 (::ffff:1.2.3.4) counts as its embedded IPv4.
    """
    s = text.strip()
    if not s:
        return None
    try:
        obj = ipaddress.ip_address(s)
    except ValueError:
        return None
    if obj.version == 4:
        return str(obj)
    if obj.ipv4_mapped is not None:
        return str(obj.ipv4_mapped)
    return None


def iter_ipv4_targets(lines: Iterable[str]) -> Iterator[str]:
    for line in lines:
        ip = parse_ipv4(line)
        if ip is not None:
            yield ip


# -----------------------------
# Probe config
# -----------------------------

def select_ports(port853: bool) -> Tuple[int, ...]:
    if port853:
        return (DOQ_PORT,)
    return LEGACY_DOQ_PORTS


@dataclass(frozen=True)
class ProbeConfig:
    ports: Tuple[int, ...] = LEGACY_DOQ_PORTS
    alpn_protocols: Tuple[str, ...] = DEFAULT_DOQ_VERSIONS
    quic_versions: Tuple[int, ...] = DEFAULT_QUIC_VERSIONS
    handshake_timeout: float = HANDSHAKE_TIMEOUT_S

    def __post_init__(self):
        if not self.ports:
            raise ValueError("ProbeConfig.ports must not be empty")
        if not self.alpn_protocols:
            raise ValueError("ProbeConfig.alpn_protocols must not be empty")
        if self.handshake_timeout <= 0:
            raise ValueError("ProbeConfig.handshake_timeout must be positive")


@dataclass
class ProbeOutcome:
    address: str
    reachable: bool
    port: Optional[int] = None
    errors: List[Tuple[int, str]] = field(default_factory=list)


@dataclass
class RunStats:
    admitted: int = 0
    completed: int = 0
    reachable: int = 0
    write_errors: int = 0
    crashed: int = 0
    elapsed_s: float = 0.0


# -----------------------------
# QUIC handshake
# -----------------------------

# dial(address, port, config) returns on a completed handshake, raises otherwise.
Dialer = Callable[[str, int, ProbeConfig], None]


def make_quic_configuration(config: ProbeConfig) -> QuicConfiguration:
    return QuicConfiguration(
        is_client=True,
        alpn_protocols=list(config.alpn_protocols),
        verify_mode=ssl.CERT_NONE,
        idle_timeout=config.handshake_timeout,
        supported_versions=list(config.quic_versions),
    )


async def _quic_handshake(address: str, port: int, config: ProbeConfig) -> None:
    configuration = make_quic_configuration(config)
    async with connect(address, port, configuration=configuration):
        # handshake done; leaving the context closes the session (error code 0)
        pass


def dial_quic(address: str, port: int, config: ProbeConfig) -> None:
    """
    One QUIC+TLS handshake to address:port, bounded by config.handshake_timeout.

    Runs its own event loop on the calling thread, so it is safe to call from
    pool workers. Raises asyncio.TimeoutError / ConnectionError / OSError etc.
    on failure.
    """
    asyncio.run(asyncio.wait_for(_quic_handshake(address, port, config), config.handshake_timeout))


# -----------------------------
# Probe worker
# -----------------------------

def probe_target(address: str, config: ProbeConfig, dial: Dialer = dial_quic) -> ProbeOutcome:
    """
    Sequential port fallback: each port is tried once, in config order,
    and the first completed handshake ends the probe.
    """
    outcome = ProbeOutcome(address=address, reachable=False)
    for port in config.ports:
        try:
            dial(address, port, config)
        except Exception as e:
            outcome.errors.append((port, type(e).__name__))
            continue
        outcome.reachable = True
        outcome.port = port
        return outcome
    return outcome


# -----------------------------
# Admission controller
# -----------------------------

class WaitGroup:
    """Counter of outstanding workers; wait() blocks until it drops to zero."""

    def __init__(self):
        self._cond = threading.Condition()
        self._pending = 0
        self._signaled = 0

    @property
    def signaled(self) -> int:
        with self._cond:
            return self._signaled

    def add(self, n: int = 1) -> None:
        with self._cond:
            self._pending += n

    def done(self) -> None:
        with self._cond:
            if self._pending <= 0:
                raise RuntimeError("WaitGroup.done() called more times than add()")
            self._pending -= 1
            self._signaled += 1
            if self._pending == 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            while self._pending > 0:
                self._cond.wait()


class AdmissionController:
    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"parallel limit must be >= 1 (got {limit})")
        self.limit = limit
        self._sem = threading.BoundedSemaphore(limit)
        self._wg = WaitGroup()

    @property
    def completed(self) -> int:
        return self._wg.signaled

    def acquire(self) -> None:
        self._sem.acquire()
        self._wg.add(1)

    def release(self) -> None:
        self._sem.release()
        self._wg.done()

    def await_all_complete(self) -> None:
        self._wg.wait()


# -----------------------------
# Result sink
# -----------------------------

class ResultSink:
    """Append-only line writer shared by all workers."""

    def __init__(self, fh: TextIO):
        self._fh = fh
        self._lock = threading.Lock()

    def append(self, address: str) -> bool:
        with self._lock:
            try:
                self._fh.write(address + "\n")
                self._fh.flush()
            except OSError as e:
                print(f"WARN  {address:>16} write failed: {type(e).__name__}: {e}", file=sys.stderr)
                return False
        return True


# -----------------------------
# Dispatch loop
# -----------------------------

def run_probe(
        targets: Iterable[str],
        sink: ResultSink,
        config: ProbeConfig,
        parallel: int = DEFAULT_PARALLEL,
        dial: Dialer = dial_quic,
        verbose: bool = False,
) -> RunStats:
    controller = AdmissionController(parallel)
    stats = RunStats()
    stats_lock = threading.Lock()

    def worker(ip: str) -> None:
        try:
            outcome = probe_target(ip, config, dial)
            if outcome.reachable:
                written = sink.append(ip)
                with stats_lock:
                    stats.reachable += 1
                    if not written:
                        stats.write_errors += 1
                if verbose:
                    print(f"DOQ   {ip:>16} port={outcome.port}")
            elif verbose:
                detail = ",".join(f"{port}:{err}" for port, err in outcome.errors)
                print(f"FAIL  {ip:>16} {detail}")
        except Exception as e:
            with stats_lock:
                stats.crashed += 1
            print(f"WARN  {ip:>16} crash:{type(e).__name__}: {e}", file=sys.stderr)
        finally:
            controller.release()

    t0 = time.perf_counter()
    with ThreadPoolExecutor(max_workers=parallel) as ex:
        for ip in targets:
            controller.acquire()
            stats.admitted += 1
            ex.submit(worker, ip)
        controller.await_all_complete()

    stats.completed = controller.completed
    stats.elapsed_s = time.perf_counter() - t0
    return stats


# -----------------------------
# Main
# -----------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Batch DNS-over-QUIC (DoQ) reachability probe for IPv4 lists.")
    ap.add_argument("paths", nargs="*", metavar="FILE",
                    help="[in file] [out file]: IPv4 list (one per line) and output file (appended to)")
    ap.add_argument("--parallel", type=int, default=DEFAULT_PARALLEL,
                    help=f"sets the limit for parallel probes (default: {DEFAULT_PARALLEL})")
    ap.add_argument("--port853", action="store_true",
                    help=f"verify on port {DOQ_PORT} only (default: {','.join(map(str, LEGACY_DOQ_PORTS))})")
    ap.add_argument("-v", "--verbose", action="store_true",
                    help="print START/DONE summary and one line per reachable target")
    return ap


def main(argv: Optional[List[str]] = None) -> None:
    args = build_arg_parser().parse_args(argv)

    if len(args.paths) != 2:
        print("need 2 arguments: [in file] [out file]", file=sys.stderr)
        sys.exit(1)
    if args.parallel < 1:
        raise SystemExit(f"--parallel must be >= 1 (got {args.parallel})")

    # aioquic logs through "quic"
    logging.getLogger("quic").setLevel(logging.ERROR)

    in_path, out_path = args.paths
    config = ProbeConfig(ports=select_ports(args.port853))

    try:
        in_file = open(in_path, "r", encoding="utf-8", errors="ignore")
    except OSError as e:
        raise SystemExit(f"cannot open input {in_path}: {e}")

    with in_file:
        try:
            out_file = open(out_path, "a", encoding="utf-8")
        except OSError as e:
            raise SystemExit(f"cannot open output {out_path}: {e}")

        with out_file:
            if args.verbose:
                print(
                    f"START | in={in_path} | out={out_path} | parallel={args.parallel} | "
                    f"ports={','.join(map(str, config.ports))} | timeout={config.handshake_timeout}s")

            stats = run_probe(
                iter_ipv4_targets(in_file),
                ResultSink(out_file),
                config,
                parallel=args.parallel,
                dial=dial_quic,
                verbose=args.verbose,
            )

    if args.verbose:
        print("---")
        print(
            f"DONE. probed={stats.completed} | reachable={stats.reachable} | "
            f"write_errors={stats.write_errors} | elapsed={stats.elapsed_s:.1f}s | Output: {out_path}")


if __name__ == "__main__":
    main()
