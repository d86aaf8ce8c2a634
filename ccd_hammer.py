#!/usr/bin/env python3
# Copyright 2024-2026 Hewlett Packard Enterprise Development LP
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# ───────────────────────────────────────────────────────────────────────
from __future__ import annotations

import argparse
import csv
import json
import logging
import os
import platform
import re
import signal
import socket
import statistics
import subprocess
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import psutil
import requests

try:
    import yaml
    YAML_AVAILABLE = True
except ImportError:
    YAML_AVAILABLE = False
try:
    import setproctitle
    SETPROCTITLE_AVAILABLE = True
except ImportError:
    SETPROCTITLE_AVAILABLE = False

# ───────────────────────────────────────────────────────────────────────
# ASCII BANNER  ─────────────────────────────────────────────────────────
CCD_HAMMER_BANNER = r'''
╔═══════════════════════════════════════════════════════════════════╗
║     ██████╗ ██████╗██████╗     ██╗  ██╗ █████╗ ███╗   ███╗        ║
║    ██╔════╝██╔════╝██╔══██╗    ██║  ██║██╔══██╗████╗ ████║        ║
║    ██║     ██║     ██║  ██║    ███████║███████║██╔████╔██║   🔨   ║
║    ██║     ██║     ██║  ██║    ██╔══██║██╔══██║██║╚██╔╝██║        ║
║    ╚██████╗╚██████╗██████╔╝    ██║  ██║██║  ██║██║ ╚═╝ ██║   🔥   ║
║     ╚═════╝ ╚═════╝╚═════╝     ╚═╝  ╚═╝╚═╝  ╚═╝╚═╝     ╚═╝        ║
║                                                                   ║
║        Per-Core / All-Core Throughput & Thermal Tester            ║
╚═══════════════════════════════════════════════════════════════════╝
'''


def print_banner():
    """Print the CCD Hammer ASCII banner."""
    print(CCD_HAMMER_BANNER)


# ───────────────────────────────────────────────────────────────────────
# CONSTANTS  ────────────────────────────────────────────────────────────
CPU_SYSFS = "/sys/devices/system/cpu"
WORKLOAD_NAME = "xmrig"
DEFAULT_HTTP_HOST = "127.0.0.1"
DEFAULT_HTTP_PORT = 8080
STATUS_PATH = "/1/summary"
DEFAULT_CORES_PER_CCD = 8

# Chiplet sensors exposed by k10temp: Tccd1..TccdN on Zen 2+, Tdie on older parts
CCD_LABEL_RE = re.compile(r"^(Tccd\d+|Tdie)$")

# Per-mode defaults applied when neither the CLI nor the config sets a value
MODE_DEFAULTS = {
    "single": {"duration": 60.0, "interval": 5.0, "output": "single_core_results.csv"},
    "all": {"duration": 3600.0, "interval": 10.0, "output": "multi_core_results.csv"},
}

SAMPLE_COLUMNS = ["Timestamp", "Unit", "CCD", "Hashrate_H/s", "Freq_MHz", "CCD_Temp_C"]
SUMMARY_COLUMNS = [
    "unit", "ccd", "threads", "affinity_mask", "samples", "valid_samples",
    "hashrate_avg", "hashrate_peak", "freq_avg_MHz", "freq_peak_MHz",
    "baseline_C", "temp_start_C", "temp_end_C", "temp_delta_C",
    "thermal_stable", "gate_state", "gate_wait_s", "total_hashes", "notes",
]


# ───────────────────────────────────────────────────────────────────────
# 0.  ERRORS  ───────────────────────────────────────────────────────────
class PreconditionError(RuntimeError):
    """Fatal startup condition (missing privilege, missing workload binary)."""


class WorkloadLaunchError(RuntimeError):
    """The workload generator could not be started."""


class RunCancelled(Exception):
    """Raised from a signal handler to unwind the scheduler."""


# ───────────────────────────────────────────────────────────────────────
# 1.  DATA MODEL  ───────────────────────────────────────────────────────
@dataclass(frozen=True)
class TestUnit:
    """One schedulable benchmark target: a physical core with its SMT sibling(s),
    or the whole socket (empty affinity, no thermal domain)."""

    __test__ = False  # keep pytest from collecting this class

    unit_id: Union[int, str]
    affinity: Tuple[int, ...] = ()
    thermal_domain: Optional[int] = None
    thread_count: int = 1

    @property
    def affinity_mask(self) -> int:
        return affinity_mask(self.affinity)

    @property
    def affinity_hex(self) -> Optional[str]:
        return format_affinity_mask(self.affinity) if self.affinity else None

    @property
    def primary_cpu(self) -> Optional[int]:
        return self.affinity[0] if self.affinity else None

    @property
    def is_all_core(self) -> bool:
        return not self.affinity


@dataclass(frozen=True)
class ThermalBaseline:
    domain: int
    idle_temp_c: float


@dataclass
class Sample:
    """One telemetry observation. hashrate is None when the endpoint was unavailable."""

    timestamp: float
    unit_id: Union[int, str]
    thermal_domain: Optional[int]
    hashrate: Optional[float]
    frequency_mhz: Union[int, List[int]]
    temperature_c: Union[float, List[float]]

    @property
    def measured(self) -> bool:
        return self.hashrate is not None and self.hashrate > 0

    def as_row(self) -> List[Any]:
        return [
            int(self.timestamp),
            self.unit_id,
            domain_label(self.thermal_domain),
            self.hashrate if self.measured else 0,
            _join_values(self.frequency_mhz),
            _join_values(self.temperature_c),
        ]


@dataclass
class WorkloadProcess:
    pid: int
    affinity_mask: Optional[str]
    status_endpoint: str
    handle: Any = field(default=None, repr=False, compare=False)


class GateState(Enum):
    COOLING = "cooling"
    STABILIZING = "stabilizing"
    STABLE = "stable"
    TIMED_OUT = "timed_out"


@dataclass
class GateResult:
    state: GateState
    elapsed_s: float
    temperature_c: float
    stable_count: int

    @property
    def stable(self) -> bool:
        return self.state is GateState.STABLE


@dataclass
class UnitResult:
    unit: TestUnit
    samples: List[Sample]
    baseline_c: Optional[float]
    temp_start_c: Union[float, List[float]]
    temp_end_c: Union[float, List[float]]
    gate: Optional[GateResult] = None
    total_hashes: int = 0
    notes: List[str] = field(default_factory=list)

    @property
    def thermal_stable(self) -> bool:
        # A skipped gate means no same-CCD history to recover from
        return self.gate is None or self.gate.stable

    @property
    def temp_delta_c(self) -> float:
        if isinstance(self.temp_start_c, list) and isinstance(self.temp_end_c, list):
            deltas = [end - start for start, end in zip(self.temp_start_c, self.temp_end_c)]
            return max(deltas) if deltas else 0.0
        return float(self.temp_end_c) - float(self.temp_start_c)

    def summary(self, include_zero: bool = False) -> Dict[str, Any]:
        """Flatten into one summary row (see SUMMARY_COLUMNS)."""
        hashrate = aggregate_hashrate(self.samples, include_zero=include_zero)
        freq = aggregate_frequency(self.samples)
        return {
            "unit": self.unit.unit_id,
            "ccd": domain_label(self.unit.thermal_domain),
            "threads": self.unit.thread_count,
            "affinity_mask": self.unit.affinity_hex or "",
            "samples": len(self.samples),
            "valid_samples": hashrate["valid_samples"],
            "hashrate_avg": hashrate["hashrate_avg"],
            "hashrate_peak": hashrate["hashrate_peak"],
            "freq_avg_MHz": freq["freq_avg"],
            "freq_peak_MHz": freq["freq_peak"],
            "baseline_C": self.baseline_c,
            "temp_start_C": _join_values(self.temp_start_c),
            "temp_end_C": _join_values(self.temp_end_c),
            "temp_delta_C": round(self.temp_delta_c, 1),
            "thermal_stable": self.thermal_stable,
            "gate_state": self.gate.state.value if self.gate else "skipped",
            "gate_wait_s": round(self.gate.elapsed_s, 1) if self.gate else 0.0,
            "total_hashes": self.total_hashes,
            "notes": "; ".join(self.notes),
        }


def domain_label(domain: Optional[int]) -> str:
    return "all" if domain is None else str(domain)


def _join_values(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return ";".join(str(v) for v in value)
    return value


# ───────────────────────────────────────────────────────────────────────
# 2.  TELEMETRY  ────────────────────────────────────────────────────────
def retry(fn: Callable[[], Any], max_attempts: int, delay: float,
          sleep: Callable[[float], None] = time.sleep,
          exceptions: Tuple[type, ...] = ()) -> Any:
    """Call fn until it returns something other than None.

    A None result (or one of `exceptions`) counts as a failed attempt. Sleeps
    `delay` seconds between attempts. Returns None once max_attempts are spent.
    """
    for attempt in range(1, max_attempts + 1):
        try:
            value = fn()
        except exceptions:
            value = None
        if value is not None:
            return value
        if attempt < max_attempts:
            sleep(delay)
    return None


class SystemMetricsSource:
    """Abstract base; subclasses read per-CPU clocks and per-chiplet temperatures.

    Implementations must never raise: an unreadable value is reported as 0.
    """

    def frequency(self, cpu: int) -> int:
        raise NotImplementedError

    def temperature(self, domain: int) -> float:
        raise NotImplementedError

    def frequencies(self, cpus: Sequence[int]) -> List[int]:
        return [self.frequency(cpu) for cpu in cpus]

    def temperatures(self, domains: Sequence[int]) -> List[float]:
        return [self.temperature(domain) for domain in domains]


# ── Linux: cpufreq sysfs + hwmon (k10temp) via psutil ─────────────────
class LinuxMetricsSource(SystemMetricsSource):
    def __init__(self, cpu_dir: str = CPU_SYSFS, label_pattern=CCD_LABEL_RE):
        self.cpu_dir = cpu_dir
        self.label_pattern = label_pattern

    def frequency(self, cpu):
        path = os.path.join(self.cpu_dir, f"cpu{cpu}", "cpufreq", "scaling_cur_freq")
        try:
            with open(path) as f:
                return int(f.read().strip()) // 1000  # kHz -> MHz
        except (OSError, ValueError):
            return 0

    def chiplet_sensors(self) -> List[Tuple[str, float]]:
        """(label, °C) for every sensor whose label names a chiplet, in hwmon order."""
        try:
            readings = psutil.sensors_temperatures()
        except (AttributeError, OSError):
            # AttributeError: psutil has no sensor support on this platform
            return []
        matches = []
        for entries in readings.values():
            for entry in entries:
                if self.label_pattern.match(entry.label or ""):
                    matches.append((entry.label, entry.current))
        return matches

    def temperature(self, domain):
        """Tccd<N+1> for domain N, else Tdie, else the highest-numbered Tccd.

        Lookup is by label, so hwmon ordering (temp10 sorts before temp2) does
        not matter.
        """
        matches = self.chiplet_sensors()
        if not matches:
            return 0.0
        by_label: Dict[str, float] = {}
        for label, value in matches:
            by_label.setdefault(label, value)
        value = by_label.get(f"Tccd{domain + 1}", by_label.get("Tdie"))
        if value is None:
            numbered = sorted((int(label[4:]), v) for label, v in by_label.items() if label.startswith("Tccd"))
            value = numbered[-1][1] if numbered else matches[-1][1]
        try:
            return float(value)
        except (TypeError, ValueError):
            return 0.0


# ── Workload status endpoint ──────────────────────────────────────────
def status_url(host: str, port: int) -> str:
    return f"http://{host}:{port}{STATUS_PATH}"


def probe_endpoint(url: str, timeout: float = 5.0) -> bool:
    """True when the endpoint answers HTTP 200."""
    try:
        return requests.get(url, timeout=timeout).status_code == 200
    except requests.RequestException:
        return False


class ThroughputReader:
    """Polls the workload's HTTP summary for the current hashrate.

    read() retries up to max_attempts with a fixed delay, so one call can block
    for up to max_attempts * retry_delay seconds.
    """

    def __init__(self, endpoint: str, max_attempts: int = 30, retry_delay: float = 1.0,
                 connect_timeout: float = 5.0, read_timeout: float = 5.0,
                 sleep: Callable[[float], None] = time.sleep, log=None):
        self.endpoint = endpoint
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.sleep = sleep
        self.log = log or logging.getLogger("ccdhammer")

    def _summary(self) -> Optional[Dict[str, Any]]:
        try:
            resp = requests.get(self.endpoint, timeout=(self.connect_timeout, self.read_timeout))
        except requests.RequestException as e:
            self.log.debug(f"Status endpoint unreachable: {e}")
            return None
        if resp.status_code != 200:
            self.log.debug(f"Status endpoint returned HTTP {resp.status_code}")
            return None
        try:
            body = resp.json()
        except ValueError:
            self.log.debug("Status endpoint returned a non-JSON body")
            return None
        return body if isinstance(body, dict) else None

    def fetch_hashrate(self) -> Optional[float]:
        """Single attempt. None unless hashrate.total[0] is a positive number."""
        summary = self._summary()
        if summary is None:
            return None
        try:
            value = float(summary["hashrate"]["total"][0])
        except (KeyError, IndexError, TypeError, ValueError):
            return None
        return value if value > 0 else None

    def read(self) -> Optional[float]:
        return retry(self.fetch_hashrate, self.max_attempts, self.retry_delay, sleep=self.sleep)

    def total_hashes(self) -> int:
        """Cumulative results.hashes_total, 0 if unavailable."""
        summary = self._summary()
        if summary is None:
            return 0
        try:
            return int(summary["results"]["hashes_total"])
        except (KeyError, TypeError, ValueError):
            return 0

    def probe(self) -> bool:
        return probe_endpoint(self.endpoint, timeout=self.connect_timeout)


# ───────────────────────────────────────────────────────────────────────
# 3.  CPU TOPOLOGY & AFFINITY  ──────────────────────────────────────────
@dataclass
class CpuTopology:
    """Physical cores (each a tuple of logical CPUs, lowest first) and their CCD."""

    cores: List[Tuple[int, ...]]
    domains: List[int]

    @property
    def physical_cores(self) -> int:
        return len(self.cores)

    @property
    def logical_cpus(self) -> int:
        return sum(len(cpus) for cpus in self.cores)

    @property
    def domain_ids(self) -> List[int]:
        return sorted(set(self.domains))

    @property
    def primary_cpus(self) -> List[int]:
        return [cpus[0] for cpus in self.cores]


def synthetic_topology(total_cores: int, cores_per_domain: int = DEFAULT_CORES_PER_CCD,
                       smt: bool = True) -> CpuTopology:
    """Linux enumeration on AMD desktop parts: core N's sibling is N + total_cores."""
    cores = [(c, c + total_cores) if smt else (c,) for c in range(total_cores)]
    domains = [c // cores_per_domain for c in range(total_cores)]
    return CpuTopology(cores=cores, domains=domains)


def _read_sysfs(path: str) -> Optional[str]:
    try:
        with open(path) as f:
            return f.read().strip()
    except OSError:
        return None


def detect_topology(cpu_dir: str = CPU_SYSFS,
                    cores_per_domain: int = DEFAULT_CORES_PER_CCD) -> CpuTopology:
    """Group logical CPUs into physical cores via sysfs topology.

    A CCD is identified by its shared L3 (cache/index3/id). Without L3 ids the
    domain falls back to core_index // cores_per_domain.
    """
    try:
        entries = os.listdir(cpu_dir)
    except OSError:
        entries = []
    cpus = sorted(int(e[3:]) for e in entries if e.startswith("cpu") and e[3:].isdigit())

    groups: Dict[Tuple[str, str], List[int]] = {}
    l3_ids: Dict[Tuple[str, str], Optional[str]] = {}
    for cpu in cpus:
        base = os.path.join(cpu_dir, f"cpu{cpu}")
        core_id = _read_sysfs(os.path.join(base, "topology", "core_id"))
        package_id = _read_sysfs(os.path.join(base, "topology", "physical_package_id"))
        if core_id is None or package_id is None:
            continue  # offline CPU
        key = (package_id, core_id)
        groups.setdefault(key, []).append(cpu)
        if key not in l3_ids:
            l3 = _read_sysfs(os.path.join(base, "cache", "index3", "id"))
            l3_ids[key] = f"{package_id}:{l3}" if l3 is not None else None

    if not groups:
        logical = os.cpu_count() or 1
        return synthetic_topology(max(1, logical // 2), cores_per_domain, smt=logical > 1)

    cores = [tuple(sorted(members)) for members in groups.values()]
    if all(l3 is not None for l3 in l3_ids.values()):
        order: Dict[str, int] = {}
        domains = [order.setdefault(l3_ids[key], len(order)) for key in groups]
    else:
        domains = [index // cores_per_domain for index in range(len(cores))]
    return CpuTopology(cores=cores, domains=domains)


def affinity_mask(cpus: Sequence[int]) -> int:
    """Bit-set union of logical CPU indices."""
    mask = 0
    for cpu in cpus:
        mask |= 1 << cpu
    return mask


def format_affinity_mask(cpus: Sequence[int]) -> str:
    return f"0x{affinity_mask(cpus):X}"


def format_cpu_list(cpus: Sequence[int]) -> str:
    """Format CPU list as compact ranges (e.g., '0-15,32-47' instead of full list)."""
    if not cpus:
        return "[]"

    cpus_sorted = sorted(cpus)
    ranges = []
    start = end = cpus_sorted[0]
    for cpu in cpus_sorted[1:]:
        if cpu == end + 1:
            end = cpu
        else:
            ranges.append(f"{start}-{end}" if start != end else f"{start}")
            start = end = cpu
    ranges.append(f"{start}-{end}" if start != end else f"{start}")
    return ",".join(ranges)


def parse_cpu_list(cpu_list_str: str) -> List[int]:
    """Parse a list like '0-3,8' into sorted unique indices."""
    cpus = []
    for part in cpu_list_str.split(','):
        part = part.strip()
        if not part:
            continue
        if '-' in part:
            start, end = map(int, part.split('-'))
            cpus.extend(range(start, end + 1))
        else:
            cpus.append(int(part))
    return sorted(set(cpus))


# ───────────────────────────────────────────────────────────────────────
# 4.  WORKLOAD CONTROLLER  ──────────────────────────────────────────────
class WorkloadController:
    """Owns the single workload process and the fixed HTTP port it binds."""

    def __init__(self, binary: str, host: str = DEFAULT_HTTP_HOST, port: int = DEFAULT_HTTP_PORT,
                 algo: str = "rx/0", cpu_priority: int = 3, huge_pages_1gb: bool = True,
                 stop_grace_s: float = 2.0, port_release_timeout_s: float = 10.0,
                 ready_poll_s: float = 1.0, clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep, log=None):
        self.binary = binary
        self.process_name = os.path.basename(binary)
        self.host = host
        self.port = port
        self.algo = algo
        self.cpu_priority = cpu_priority
        self.huge_pages_1gb = huge_pages_1gb
        self.stop_grace_s = stop_grace_s
        self.port_release_timeout_s = port_release_timeout_s
        self.ready_poll_s = ready_poll_s
        self.clock = clock
        self.sleep = sleep
        self.log = log or logging.getLogger("ccdhammer")
        self.current: Optional[WorkloadProcess] = None

    @property
    def status_endpoint(self) -> str:
        return status_url(self.host, self.port)

    def build_command(self, unit: TestUnit) -> List[str]:
        cmd = [
            self.binary,
            "--http-enabled",
            f"--http-host={self.host}",
            f"--http-port={self.port}",
            f"--algo={self.algo}",
            "--stress",
            "--huge-pages",
        ]
        if self.huge_pages_1gb:
            cmd.append("--randomx-1gb-pages")
        cmd += ["--cpu-priority", str(self.cpu_priority), "--threads", str(unit.thread_count)]
        if unit.affinity:
            cmd += ["--cpu-affinity", unit.affinity_hex]
        return cmd

    def start(self, unit: TestUnit) -> WorkloadProcess:
        if self.current is not None:
            self.stop(self.current)
        self._wait_port_released()

        cmd = self.build_command(unit)
        self.log.debug(f"Launching: {' '.join(cmd)}")
        try:
            handle = psutil.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,  # detach from our terminal
            )
        except OSError as e:
            raise WorkloadLaunchError(f"Could not launch {self.binary}: {e}") from e

        self.current = WorkloadProcess(
            pid=handle.pid,
            affinity_mask=unit.affinity_hex,
            status_endpoint=self.status_endpoint,
            handle=handle,
        )
        self.log.info(f"  {self.process_name} PID: {handle.pid}")
        return self.current

    def wait_until_ready(self, process: WorkloadProcess, timeout_s: float) -> bool:
        """Poll the status endpoint; on timeout carry on, sampling retries cover the gap."""
        self.log.info(f"  Waiting for {self.process_name} to initialize...")
        deadline = self.clock() + timeout_s
        while True:
            if probe_endpoint(process.status_endpoint, timeout=self.ready_poll_s):
                self.log.info("  Status endpoint is up")
                return True
            if not self.is_alive(process):
                self.log.warning(f"  {self.process_name} (PID {process.pid}) exited during startup")
                return False
            if self.clock() >= deadline:
                self.log.warning(f"  Status endpoint not ready after {timeout_s:.0f}s (continuing anyway)")
                return False
            self.sleep(self.ready_poll_s)

    def is_alive(self, process: WorkloadProcess) -> bool:
        handle = process.handle
        try:
            if handle is None:
                handle = psutil.Process(process.pid)
            return handle.is_running() and handle.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False

    def terminate(self, process: WorkloadProcess) -> None:
        """SIGTERM, then SIGKILL after stop_grace_s (immediately when 0)."""
        handle = process.handle
        try:
            if handle is None:
                handle = psutil.Process(process.pid)
            if self.stop_grace_s > 0:
                handle.terminate()
                try:
                    handle.wait(timeout=self.stop_grace_s)
                    return
                except psutil.TimeoutExpired:
                    self.log.debug(f"PID {process.pid} ignored SIGTERM, killing")
            handle.kill()
            handle.wait(timeout=5)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            self.log.warning(f"PID {process.pid} did not exit after SIGKILL")

    def terminate_all_matching(self, name: str) -> int:
        """Kill every process named `name` (orphan cleanup). Returns the count."""
        victims = []
        for proc in psutil.process_iter(["name"]):
            if proc.info.get("name") != name or proc.pid == os.getpid():
                continue
            try:
                proc.kill()
                victims.append(proc)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        if victims:
            psutil.wait_procs(victims, timeout=5)
            self.log.debug(f"Swept {len(victims)} stray {name} process(es)")
        return len(victims)

    def stop(self, process: Optional[WorkloadProcess] = None) -> None:
        """Idempotent teardown of the tracked (or given) process plus a name sweep."""
        process = process or self.current
        if process is not None:
            self.log.info(f"  Stopping {self.process_name} (PID {process.pid})...")
            self.terminate(process)
        self.terminate_all_matching(self.process_name)
        if self.current is process:
            self.current = None

    def _port_in_use(self) -> bool:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.settimeout(0.5)
            return s.connect_ex((self.host, self.port)) == 0

    def _wait_port_released(self) -> None:
        deadline = self.clock() + self.port_release_timeout_s
        while self._port_in_use():
            if self.clock() >= deadline:
                self.log.warning(f"Port {self.port} still bound, sweeping {self.process_name}")
                self.terminate_all_matching(self.process_name)
                if self._port_in_use():
                    raise WorkloadLaunchError(f"{self.host}:{self.port} is held by another process")
                return
            self.sleep(0.5)


# ───────────────────────────────────────────────────────────────────────
# 5.  THERMAL GATE  ─────────────────────────────────────────────────────
class ThermalGate:
    """Blocks until a CCD is back within tolerance of its idle baseline.

    Needs `required_samples` consecutive in-tolerance readings; gives up after
    max_wait_s. A timeout is logged and reported, never raised.
    """

    def __init__(self, metrics: SystemMetricsSource, tolerance_c: float = 2.0,
                 min_stable_s: float = 10.0, max_wait_s: float = 120.0, poll_s: float = 2.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep, log=None):
        self.metrics = metrics
        self.tolerance_c = tolerance_c
        self.min_stable_s = min_stable_s
        self.max_wait_s = max_wait_s
        self.poll_s = poll_s
        self.required_samples = max(1, int(min_stable_s // poll_s))
        self.clock = clock
        self.sleep = sleep
        self.log = log or logging.getLogger("ccdhammer")

    def wait(self, domain: int, baseline_c: float) -> GateResult:
        target = baseline_c + self.tolerance_c
        self.log.info(f"  Waiting for thermal baseline (target: {baseline_c:.1f}°C ±{self.tolerance_c:g}°C)...")

        start = self.clock()
        stable_count = 0
        state = GateState.COOLING
        while True:
            elapsed = self.clock() - start
            if elapsed >= self.max_wait_s:
                break
            temp = self.metrics.temperature(domain)
            if temp <= target:
                stable_count += 1
                state = GateState.STABILIZING
                self.log.debug(f"  At baseline: {temp:.1f}°C (stable {stable_count}/{self.required_samples})")
                if stable_count >= self.required_samples:
                    self.log.info(f"  🎯 Thermal baseline achieved and stable ({elapsed:.0f}s total)")
                    return GateResult(GateState.STABLE, elapsed, temp, stable_count)
            else:
                stable_count = 0
                state = GateState.COOLING
                self.log.debug(f"  Cooling: {temp:.1f}°C → {baseline_c:.1f}°C ({elapsed:.0f}/{self.max_wait_s:.0f}s)")
            self.sleep(self.poll_s)

        temp = self.metrics.temperature(domain)
        self.log.warning(f"  ⚠️  Thermal baseline timeout: {temp:.1f}°C (continuing anyway, last state {state.value})")
        return GateResult(GateState.TIMED_OUT, self.clock() - start, temp, stable_count)


# ───────────────────────────────────────────────────────────────────────
# 6.  SAMPLING LOOP  ────────────────────────────────────────────────────
class SamplingLoop:
    """Samples throughput, clocks and temperatures every interval_s for a fixed duration."""

    def __init__(self, metrics: SystemMetricsSource, throughput: ThroughputReader,
                 topology: CpuTopology, interval_s: float = 5.0,
                 clock: Callable[[], float] = time.monotonic,
                 wallclock: Callable[[], float] = time.time,
                 sleep: Callable[[float], None] = time.sleep, log=None):
        self.metrics = metrics
        self.throughput = throughput
        self.topology = topology
        self.interval_s = interval_s
        self.clock = clock
        self.wallclock = wallclock
        self.sleep = sleep
        self.log = log or logging.getLogger("ccdhammer")

    def _frequency(self, unit: TestUnit) -> Union[int, List[int]]:
        if unit.is_all_core:
            return self.metrics.frequencies(self.topology.primary_cpus)
        return self.metrics.frequency(unit.primary_cpu)

    def _temperature(self, unit: TestUnit) -> Union[float, List[float]]:
        if unit.thermal_domain is None:
            return self.metrics.temperatures(self.topology.domain_ids)
        return self.metrics.temperature(unit.thermal_domain)

    def run(self, unit: TestUnit, duration_s: float,
            on_sample: Optional[Callable[[Sample], None]] = None) -> List[Sample]:
        self.log.info("  Starting monitoring...")
        samples: List[Sample] = []
        start = self.clock()
        last_stamp = float("-inf")
        while self.clock() - start < duration_s:
            hashrate = self.throughput.read()
            freq = self._frequency(unit)
            temp = self._temperature(unit)
            # wall clock can step backwards (NTP); keep stamps non-decreasing
            last_stamp = max(last_stamp, self.wallclock())
            sample = Sample(
                timestamp=last_stamp,
                unit_id=unit.unit_id,
                thermal_domain=unit.thermal_domain,
                hashrate=hashrate,
                frequency_mhz=freq,
                temperature_c=temp,
            )
            samples.append(sample)
            if on_sample is not None:
                on_sample(sample)

            elapsed = self.clock() - start
            remaining = max(0.0, duration_s - elapsed)
            self.log.info(format_progress(sample, elapsed, remaining))
            self.sleep(self.interval_s)
        return samples


def format_progress(sample: Sample, elapsed: float, remaining: float) -> str:
    """Human-readable progress line; ⚡ when measured, ⏳ when the endpoint was unavailable."""
    if sample.measured:
        head = f"⚡ {elapsed:.0f}s: {sample.hashrate:.1f} H/s"
    else:
        head = f"⏳ {elapsed:.0f}s: API unavailable"

    if isinstance(sample.frequency_mhz, list):
        live = [f for f in sample.frequency_mhz if f > 0]
        clock = f"avg {statistics.mean(live):.0f} MHz" if live else "0 MHz"
        temps = sample.temperature_c if isinstance(sample.temperature_c, list) else [sample.temperature_c]
        thermal = " | ".join(f"CCD{i}: {t:.1f}°C" for i, t in enumerate(temps))
        return f"{head} | all cores @ {clock} | {thermal} | {remaining:.0f}s remaining"
    return (f"{head} | Core {sample.unit_id} @ {sample.frequency_mhz} MHz | "
            f"CCD{sample.thermal_domain}: {sample.temperature_c:.1f}°C | {remaining:.0f}s remaining")


# ───────────────────────────────────────────────────────────────────────
# 7.  AGGREGATION & OUTPUT  ─────────────────────────────────────────────
def aggregate_hashrate(samples: Sequence[Sample], include_zero: bool = False) -> Dict[str, Any]:
    """Mean/peak hashrate. Unavailable readings count as 0 only with include_zero."""
    if include_zero:
        values = [s.hashrate if s.measured else 0.0 for s in samples]
    else:
        values = [s.hashrate for s in samples if s.measured]
    valid = sum(1 for s in samples if s.measured)
    if not values:
        return {"hashrate_avg": None, "hashrate_peak": None, "valid_samples": valid}
    return {
        "hashrate_avg": round(statistics.mean(values), 2),
        "hashrate_peak": round(max(values), 2),
        "valid_samples": valid,
    }


def aggregate_frequency(samples: Sequence[Sample]) -> Dict[str, Any]:
    """Mean/peak clock over all readings; 0 (unreadable) readings are ignored."""
    readings: List[int] = []
    for s in samples:
        if isinstance(s.frequency_mhz, list):
            readings.extend(s.frequency_mhz)
        else:
            readings.append(s.frequency_mhz)
    readings = [f for f in readings if f > 0]
    if not readings:
        return {"freq_avg": None, "freq_peak": None}
    return {"freq_avg": round(statistics.mean(readings)), "freq_peak": max(readings)}


class SampleLog:
    """Appends one CSV row per sample as it is taken, flushing each row."""

    def __init__(self, path: str):
        self.path = path
        self._file = None
        self._writer = None
        self.rows = 0

    def open(self):
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.path, 'w', newline='')
        self._writer = csv.writer(self._file)
        self._writer.writerow(SAMPLE_COLUMNS)
        self._file.flush()
        return self

    def write(self, sample: Sample) -> None:
        self._writer.writerow(sample.as_row())
        self._file.flush()
        self.rows += 1

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    def __enter__(self):
        return self.open()

    def __exit__(self, *_):
        self.close()


def unique_output_path(path: str) -> Path:
    """Insert _<hostname>_<timestamp> before the extension to avoid clobbering."""
    hostname = socket.gethostname().split('.', 1)[0]
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    path_obj = Path(path)
    return path_obj.parent / f"{path_obj.stem}_{hostname}_{timestamp}{path_obj.suffix}"


def export_summary_csv(results: Sequence[UnitResult], path: str, include_zero: bool, log) -> Optional[Path]:
    csv_path = unique_output_path(path)
    try:
        with open(csv_path, 'w', newline='') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=SUMMARY_COLUMNS)
            writer.writeheader()
            for result in results:
                writer.writerow(result.summary(include_zero))
    except OSError as e:
        log.warning(f"Failed to export CSV summary: {e}")
        return None
    log.info(f"Summary exported to CSV: {csv_path}")
    return csv_path


def export_json_results(results: Sequence[UnitResult], args, log) -> Optional[Path]:
    """Export per-unit summaries and raw samples to JSON."""
    output_path = unique_output_path(args.json_output)
    export_data = {
        "metadata": {
            "timestamp": datetime.now().isoformat(),
            "hostname": socket.gethostname().split('.', 1)[0],
            "processor": platform.processor() or platform.machine(),
            "psutil_version": psutil.__version__,
            "config_file": args.config if args.config else None,
        },
        "runtime_args": {
            "mode": args.mode,
            "duration": args.duration,
            "interval": args.interval,
            "settle_s": args.settle_s,
            "tolerance_C": args.tolerance_C,
            "min_stable_s": args.min_stable_s,
            "max_wait_s": args.max_wait_s,
            "include_zero_samples": args.include_zero_samples,
        },
        "units": [],
    }
    for result in results:
        export_data["units"].append({
            "summary": result.summary(args.include_zero_samples),
            "samples": [
                {
                    "timestamp": s.timestamp,
                    "hashrate": s.hashrate,
                    "frequency_mhz": s.frequency_mhz,
                    "temperature_c": s.temperature_c,
                }
                for s in result.samples
            ],
        })
    try:
        with open(output_path, 'w') as f:
            json.dump(export_data, f, indent=2, default=str)
    except OSError as e:
        log.error(f"Failed to export JSON: {e}")
        return None
    log.info(f"JSON results exported to: {output_path}")
    return output_path


def log_summary(results: Sequence[UnitResult], include_zero: bool, log) -> None:
    log.info("")
    log.info("=" * 80)
    log.info("BENCHMARK SUMMARY")
    log.info("=" * 80)
    log.info(f"{'Unit':<9} | {'CCD':<3} | {'Hashrate(avg)':<15} | {'Freq(avg)':<10} | {'Temp Δ':<7} | {'Stable':<6} | Notes")
    log.info(f"{'-'*9}+{'-'*5}+{'-'*17}+{'-'*12}+{'-'*9}+{'-'*8}+{'-'*20}")
    for result in results:
        row = result.summary(include_zero)
        rate = f"{row['hashrate_avg']:.1f} H/s" if row["hashrate_avg"] is not None else "N/A"
        freq = f"{row['freq_avg_MHz']} MHz" if row["freq_avg_MHz"] is not None else "N/A"
        stable = "yes" if row["thermal_stable"] else "no"
        log.info(f"{str(row['unit']):<9} | {row['ccd']:<3} | {rate:<15} | {freq:<10} | "
                 f"{row['temp_delta_C']:+6.1f} | {stable:<6} | {row['notes']}")


# ───────────────────────────────────────────────────────────────────────
# 8.  UNIT SCHEDULER  ───────────────────────────────────────────────────
def enumerate_units(topology: CpuTopology, mode: str = "single",
                    core_filter: Optional[Sequence[int]] = None,
                    threads: Optional[int] = None) -> List[TestUnit]:
    """One unit per physical core (core + SMT siblings), or a single all-core unit."""
    if mode == "all":
        return [TestUnit("all-core", (), None, threads or topology.logical_cpus)]
    units = []
    for core, cpus in enumerate(topology.cores):
        if core_filter is not None and core not in core_filter:
            continue
        units.append(TestUnit(core, tuple(cpus), topology.domains[core], threads or len(cpus)))
    return units


class BenchmarkScheduler:
    """Runs every unit in order: thermal gate → start → sample → stop.

    The workload is stopped in a finally block, so a cancelled run never
    leaves it behind.
    """

    def __init__(self, units: Sequence[TestUnit], controller: WorkloadController,
                 gate: ThermalGate, sampler: SamplingLoop, metrics: SystemMetricsSource,
                 throughput: ThroughputReader, duration_s: float, settle_s: float = 30.0,
                 ready_timeout_s: float = 10.0, include_zero_samples: bool = False,
                 on_sample: Optional[Callable[[Sample], None]] = None,
                 sleep: Callable[[float], None] = time.sleep, log=None):
        self.units = list(units)
        self.controller = controller
        self.gate = gate
        self.sampler = sampler
        self.metrics = metrics
        self.throughput = throughput
        self.duration_s = duration_s
        self.settle_s = settle_s
        self.ready_timeout_s = ready_timeout_s
        self.include_zero_samples = include_zero_samples
        self.on_sample = on_sample
        self.sleep = sleep
        self.log = log or logging.getLogger("ccdhammer")
        self.baselines: Dict[int, ThermalBaseline] = {}
        self.domains: List[int] = []
        self.results: List[UnitResult] = []

    def capture_baselines(self, domains: Sequence[int]) -> Dict[int, ThermalBaseline]:
        self.log.info("Establishing thermal baselines...")
        if self.settle_s > 0:
            self.log.info("Please ensure system is idle for accurate baseline measurement.")
            self.log.info(f"Waiting {self.settle_s:.0f} seconds for thermal stabilization...")
            self.sleep(self.settle_s)
        self.domains = list(domains)
        for domain in self.domains:
            temp = self.metrics.temperature(domain)
            self.baselines[domain] = ThermalBaseline(domain, temp)
            self.log.info(f"  CCD{domain} idle baseline: {temp:.1f}°C")
        return self.baselines

    @staticmethod
    def needs_thermal_gate(previous: Optional[TestUnit], unit: TestUnit) -> bool:
        return (previous is not None and unit.thermal_domain is not None
                and unit.thermal_domain == previous.thermal_domain)

    def _temperature(self, unit: TestUnit) -> Union[float, List[float]]:
        if unit.thermal_domain is None:
            return self.metrics.temperatures(self.domains)
        return self.metrics.temperature(unit.thermal_domain)

    def run(self, domains: Sequence[int]) -> List[UnitResult]:
        if not self.baselines:
            self.capture_baselines(domains)
        self.log.info("")
        self.log.info(f"Starting {len(self.units)} test unit(s)...")
        previous = None
        for unit in self.units:
            self.results.append(self.run_unit(unit, previous))
            previous = unit
        return self.results

    def run_unit(self, unit: TestUnit, previous: Optional[TestUnit]) -> UnitResult:
        self.log.info("")
        if unit.is_all_core:
            self.log.info(f"=== Testing all cores ({unit.thread_count} threads) ===")
        else:
            self.log.info(f"=== Testing Physical Core {unit.unit_id} (CCD{unit.thermal_domain}, "
                          f"logical CPUs {format_cpu_list(unit.affinity)}) ===")
            self.log.info(f"  CPU Affinity Mask: {unit.affinity_hex}")

        baseline = self.baselines.get(unit.thermal_domain) if unit.thermal_domain is not None else None
        gate_result = None
        if self.needs_thermal_gate(previous, unit):
            if baseline is not None:
                self.log.info("  Same CCD as previous test - waiting for thermal recovery")
                gate_result = self.gate.wait(unit.thermal_domain, baseline.idle_temp_c)
        elif previous is not None and unit.thermal_domain is not None:
            self.log.info("  Different CCD from previous test - no thermal recovery needed")

        temp_start = self._temperature(unit)
        self.log.info(f"  Test start temperature: {_join_values(temp_start)}°C")

        samples: List[Sample] = []
        total_hashes = 0
        process = None
        try:
            process = self.controller.start(unit)
            self.controller.wait_until_ready(process, self.ready_timeout_s)
            samples = self.sampler.run(unit, self.duration_s, on_sample=self.on_sample)
            total_hashes = self.throughput.total_hashes()
        finally:
            self.controller.stop(process)

        temp_end = self._temperature(unit)
        result = UnitResult(
            unit=unit,
            samples=samples,
            baseline_c=baseline.idle_temp_c if baseline else None,
            temp_start_c=temp_start,
            temp_end_c=temp_end,
            gate=gate_result,
            total_hashes=total_hashes,
        )
        if gate_result is not None and not gate_result.stable:
            over = gate_result.temperature_c - baseline.idle_temp_c
            result.notes.append(f"thermal gate timeout ({over:+.1f}°C over baseline)")
        if not any(s.measured for s in samples):
            result.notes.append("no valid hashrate readings")
        self._log_unit_result(result)
        return result

    def _log_unit_result(self, result: UnitResult) -> None:
        stats = aggregate_hashrate(result.samples, include_zero=self.include_zero_samples)
        if stats["hashrate_avg"] is None:
            self.log.info("  Average Hashrate: N/A (no valid readings)")
        else:
            self.log.info(f"  Average Hashrate: {stats['hashrate_avg']:.2f} H/s "
                          f"(based on {stats['valid_samples']} readings)")
        if isinstance(result.temp_start_c, list):
            for domain, start, end in zip(self.domains, result.temp_start_c, result.temp_end_c):
                self.log.info(f"  CCD{domain}: {start:.1f}°C → {end:.1f}°C")
        if result.total_hashes:
            self.log.info(f"  Total hashes: {result.total_hashes}")


# ───────────────────────────────────────────────────────────────────────
# 9.  CLI, CONFIG & LOGGING  ────────────────────────────────────────────
def load_config(config_path):
    """Load YAML configuration file."""
    if not YAML_AVAILABLE:
        print("Error: PyYAML is not installed. Install with: pip install pyyaml")
        sys.exit(1)

    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        return config or {}
    except FileNotFoundError:
        print(f"Error: Config file not found: {config_path}")
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Error parsing YAML config: {e}")
        sys.exit(1)


def apply_config_to_args(args, config, argv=None):
    """Overlay `global` and `runtime` config sections on args. CLI args take precedence."""
    if not config:
        return args

    argv = sys.argv[1:] if argv is None else argv
    cli_args_set = set()
    for arg in argv:
        if arg.startswith('--'):
            cli_args_set.add(arg[2:].split('=', 1)[0].replace('-', '_'))

    for section in ('global', 'runtime'):
        for key, value in (config.get(section) or {}).items():
            arg_name = key.replace('-', '_')
            if arg_name in cli_args_set:
                continue
            if not hasattr(args, arg_name):
                print(f"WARNING: Unknown config key '{section}.{key}' ignored")
                continue
            # Positionals: an explicit CLI value is anything but None
            if arg_name in ('duration', 'interval') and getattr(args, arg_name) is not None:
                continue
            setattr(args, arg_name, value)
    return args


def apply_mode_defaults(args):
    defaults = MODE_DEFAULTS[args.mode]
    if args.duration is None:
        args.duration = defaults["duration"]
    if args.interval is None:
        args.interval = defaults["interval"]
    if not args.output:
        args.output = defaults["output"]
    return args


def build_parser():
    p = argparse.ArgumentParser("CCD-HAMMER", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("duration", type=float, nargs="?", help="Seconds to sample each unit (single: 60, all: 3600)")
    p.add_argument("interval", type=float, nargs="?", help="Seconds between samples (single: 5, all: 10)")
    # global
    p.add_argument("--banner", action="store_true", help="Show ASCII banner at startup")
    p.add_argument("--config", type=str, help="Path to YAML configuration file")
    p.add_argument("--no-log", action="store_true")
    p.add_argument("--log-file", type=str)
    p.add_argument("--verbose", action="store_true")
    p.add_argument("--verbose-file-only", action="store_true", help="With --verbose and --log-file, suppress stdout (file only)")
    p.add_argument("--dry-run", action="store_true", help="Show the test plan and exit without launching the workload")
    # units
    p.add_argument("--mode", default="single", choices=["single", "all"], help="Per physical core units, or one all-core run")
    p.add_argument("--cores", type=str, help="Physical cores to test in single mode (e.g. '0-3,8'). Default: all")
    p.add_argument("--threads", type=int, help="Workload threads per unit. Default: SMT siblings (single) / all logical CPUs (all)")
    p.add_argument("--cores-per-ccd", type=int, default=DEFAULT_CORES_PER_CCD, help="CCD size used when sysfs has no L3 ids")
    # workload
    p.add_argument("--xmrig-path", type=str, help="Workload binary. Default: ~$SUDO_USER/.local/bin/xmrig")
    p.add_argument("--http-host", default=DEFAULT_HTTP_HOST)
    p.add_argument("--http-port", type=int, default=DEFAULT_HTTP_PORT)
    p.add_argument("--algo", default="rx/0")
    p.add_argument("--cpu-priority", type=int, default=3)
    p.add_argument("--no-1gb-pages", action="store_false", dest="huge_pages_1gb", help="Do not request RandomX 1GB pages")
    p.add_argument("--ready-timeout-s", type=float, default=10.0, help="Max wait for the status endpoint after launch")
    p.add_argument("--stop-grace-s", type=float, default=2.0, help="SIGTERM grace before SIGKILL (0 = kill immediately)")
    # telemetry
    p.add_argument("--max-retries", type=int, default=30, help="Hashrate fetch attempts per sample")
    p.add_argument("--retry-delay-s", type=float, default=1.0)
    p.add_argument("--connect-timeout-s", type=float, default=5.0)
    # thermal
    p.add_argument("--settle-s", type=float, default=30.0, help="Idle wait before capturing baselines")
    p.add_argument("--tolerance-C", type=float, default=2.0, help="Allowed distance above the idle baseline")
    p.add_argument("--min-stable-s", type=float, default=10.0, help="Time a CCD must stay within tolerance")
    p.add_argument("--max-wait-s", type=float, default=120.0, help="Thermal recovery timeout between units")
    p.add_argument("--gate-poll-s", type=float, default=2.0)
    # output
    p.add_argument("--output", type=str, help="Per-sample CSV (single_core_results.csv / multi_core_results.csv)")
    p.add_argument("--summary-csv", type=str, help="Path to output CSV file with one summary row per unit")
    p.add_argument("--json-output", type=str, help="Path to output JSON file with all results and samples")
    p.add_argument("--include-zero-samples", action="store_true", help="Count unavailable hashrate readings as 0 in averages")
    return p


def init_logging(a):
    """Set up logging. Returns logger."""
    if a.no_log:
        logging.disable(logging.CRITICAL)
        return logging.getLogger("nul")

    if a.verbose_file_only:
        a.verbose = True

    level = logging.DEBUG if a.verbose else logging.INFO
    handlers = []
    if not a.verbose_file_only:
        handlers.append(logging.StreamHandler(sys.stdout))
    if a.log_file:
        handlers.append(logging.FileHandler(a.log_file))
    if not handlers:
        handlers.append(logging.NullHandler())

    logger = logging.getLogger("ccdhammer")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def default_xmrig_path() -> str:
    """~/.local/bin/xmrig of the invoking user, even under sudo."""
    real_user = os.environ.get("SUDO_USER") or os.environ.get("USER")
    home = os.path.expanduser(f"~{real_user}") if real_user else os.path.expanduser("~")
    return os.path.join(home, ".local", "bin", WORKLOAD_NAME)


def check_preconditions(binary: str) -> None:
    if hasattr(os, "geteuid") and os.geteuid() != 0:
        raise PreconditionError("Please run with sudo: affinity pinning and priority hints need root")
    if not os.path.isfile(binary) or not os.access(binary, os.X_OK):
        raise PreconditionError(f"Workload binary not found or not executable: {binary}")


def install_signal_handlers():
    """Turn SIGTERM/SIGHUP into RunCancelled so finally blocks stop the workload.

    Only the first signal cancels; repeats are ignored so teardown can finish.
    """
    signals = (signal.SIGTERM, signal.SIGHUP)

    def _cancel(signum, _frame):
        for sig in signals:
            signal.signal(sig, signal.SIG_IGN)
        raise RunCancelled(signal.Signals(signum).name)

    for sig in signals:
        signal.signal(sig, _cancel)


def log_plan(args, topology: CpuTopology, units: Sequence[TestUnit], binary: str, log) -> None:
    title = "Single-Core" if args.mode == "single" else "Multi-Core"
    log.info("=" * 40)
    log.info(f"CCD Hammer {title} Performance Tester")
    log.info("=" * 40)
    log.info(f"Detected {topology.physical_cores} physical cores, {topology.logical_cpus} logical CPUs, "
             f"{len(topology.domain_ids)} CCD(s)")
    log.info(f"Workload: {binary}")
    log.info(f"Duration: {args.duration:.0f}s per unit, sampling every {args.interval:.0f}s")
    total_min = args.duration * len(units) / 60
    log.info(f"Total test time: ~{total_min:.0f} minutes + {args.settle_s:.0f}s settle + thermal recovery")
    for unit in units:
        if unit.is_all_core:
            log.info(f"  unit all-core: {unit.thread_count} threads, no affinity")
        else:
            log.info(f"  unit core {unit.unit_id}: CCD{unit.thermal_domain}, CPUs {format_cpu_list(unit.affinity)}, "
                     f"mask {unit.affinity_hex}, {unit.thread_count} threads")


# ───────────────────────────────────────────────────────────────────────
# 10.  MAIN  ────────────────────────────────────────────────────────────
def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.config:
        config = load_config(args.config)
        args = apply_config_to_args(args, config, argv)
    apply_mode_defaults(args)

    if args.banner:
        print_banner()

    log = init_logging(args)

    topology = detect_topology(cores_per_domain=args.cores_per_ccd)
    core_filter = parse_cpu_list(args.cores) if args.cores else None
    units = enumerate_units(topology, args.mode, core_filter, args.threads)
    if not units:
        log.error(f"No test units selected (cores={args.cores}, {topology.physical_cores} physical cores)")
        sys.exit(1)

    binary = args.xmrig_path or default_xmrig_path()
    log_plan(args, topology, units, binary, log)
    if args.dry_run:
        log.info("Dry run: no workload launched")
        return

    try:
        check_preconditions(binary)
    except PreconditionError as e:
        log.error(str(e))
        sys.exit(1)

    if SETPROCTITLE_AVAILABLE:
        hostname = socket.gethostname().split('.', 1)[0]
        setproctitle.setproctitle(f"ccd-hammer-{args.mode}@{hostname}")

    metrics = LinuxMetricsSource()
    controller = WorkloadController(
        binary, host=args.http_host, port=args.http_port, algo=args.algo,
        cpu_priority=args.cpu_priority, huge_pages_1gb=args.huge_pages_1gb,
        stop_grace_s=args.stop_grace_s, log=log,
    )
    throughput = ThroughputReader(
        controller.status_endpoint, max_attempts=args.max_retries,
        retry_delay=args.retry_delay_s, connect_timeout=args.connect_timeout_s, log=log,
    )
    gate = ThermalGate(
        metrics, tolerance_c=args.tolerance_C, min_stable_s=args.min_stable_s,
        max_wait_s=args.max_wait_s, poll_s=args.gate_poll_s, log=log,
    )
    sampler = SamplingLoop(metrics, throughput, topology, interval_s=args.interval, log=log)
    scheduler = BenchmarkScheduler(
        units, controller, gate, sampler, metrics, throughput,
        duration_s=args.duration, settle_s=args.settle_s,
        ready_timeout_s=args.ready_timeout_s,
        include_zero_samples=args.include_zero_samples, log=log,
    )

    install_signal_handlers()
    exit_code = 0
    try:
        with SampleLog(args.output) as sample_log:
            scheduler.on_sample = sample_log.write
            scheduler.run(topology.domain_ids)
    except WorkloadLaunchError as e:
        log.error(str(e))
        exit_code = 1
    except (KeyboardInterrupt, RunCancelled) as e:
        log.warning(f"Run cancelled ({str(e) or 'SIGINT'}); workload stopped")
        exit_code = 130
    finally:
        controller.stop()

    results = scheduler.results
    if results:
        log_summary(results, args.include_zero_samples, log)
        if args.summary_csv:
            export_summary_csv(results, args.summary_csv, args.include_zero_samples, log)
        if args.json_output:
            export_json_results(results, args, log)

    log.info("")
    log.info("=" * 46)
    log.info(f"Detailed performance data saved to: {args.output}")
    if exit_code:
        sys.exit(exit_code)
    log.info("[OK] Benchmark run finished")


if __name__ == "__main__":
    main()
