"""Resolve a process name to the handle firewall rules are scoped to.

Windows rules match on the executable image path. Linux rules match either
on the process's cgroup (sandboxed apps such as Flatpak) or on its pid.
"""

import logging
import platform
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import psutil

from netctrl.errors import TargetNotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutablePath:
    path: str
    kind = "executable-path"

    def __str__(self):
        return self.path


@dataclass(frozen=True)
class PidOwner:
    pid: int
    kind = "pid-owner"

    def __str__(self):
        return f"pid {self.pid}"


@dataclass(frozen=True)
class CgroupPath:
    path: str
    kind = "cgroup-path"

    def __str__(self):
        return f"cgroup {self.path}"


TargetIdentity = Union[ExecutablePath, PidOwner, CgroupPath]


class ProcessTable:
    """Process enumeration backed by psutil and /proc."""

    def list_processes(self) -> List[Tuple[int, str]]:
        """Return (pid, executable name) for every visible process."""
        processes = []
        for proc in psutil.process_iter(['pid', 'name']):
            try:
                name = proc.info['name']
                if name:
                    processes.append((proc.info['pid'], name))
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return processes

    def query_executable_path(self, pid: int) -> Optional[str]:
        """Return the full image path of a process, or None if it can't be read."""
        try:
            return psutil.Process(pid).exe() or None
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def find_pid_by_exact_name(self, name: str) -> Optional[int]:
        """Return the lowest pid whose process name equals ``name``."""
        for pid, proc_name in self.list_processes():
            if proc_name == name:
                return pid
        return None

    def read_cgroup_file(self, pid: int) -> Optional[str]:
        """Return the contents of /proc/<pid>/cgroup, or None if unreadable."""
        try:
            with open(f'/proc/{pid}/cgroup', 'r') as f:
                return f.read()
        except OSError:
            return None


def parse_sandbox_cgroup(cgroup_text: str, markers: Sequence[str]) -> Optional[str]:
    """Extract the cgroup path of a sandboxed launch.

    Only the first line is inspected. If it carries one of ``markers`` the
    text after its last ':' is the cgroup path.

    Returns:
        The cgroup path, or None if the process isn't sandboxed
    """
    lines = cgroup_text.splitlines()
    if not lines:
        return None

    line = lines[0]
    if not any(marker in line for marker in markers):
        return None

    _, sep, path = line.rpartition(':')
    if not sep:
        return None
    path = path.strip()
    return path or None


class ProcessResolver:
    """Find a running process and return its TargetIdentity."""

    def __init__(self, table: Optional[ProcessTable] = None, system: Optional[str] = None,
                 cgroup_markers: Sequence[str] = ("flatpak", "app-")):
        self.table = table if table is not None else ProcessTable()
        self.system = system or platform.system()
        self.cgroup_markers = tuple(cgroup_markers)

    def resolve(self, process_name: str) -> TargetIdentity:
        """Resolve ``process_name`` on the current platform.

        Raises:
            TargetNotFound: If no running process matches
        """
        if not process_name:
            raise TargetNotFound(process_name)

        if self.system == "Windows":
            identity = self._resolve_windows(process_name)
        else:
            identity = self._resolve_linux(process_name)

        logger.info("Resolved '%s' to %s", process_name, identity)
        return identity

    def _resolve_windows(self, process_name: str) -> ExecutablePath:
        # First process whose name contains the substring and whose path can be read
        for pid, name in self.table.list_processes():
            if process_name not in name:
                continue
            exe_path = self.table.query_executable_path(pid)
            if exe_path:
                return ExecutablePath(exe_path)
            logger.debug("Skipping %s (pid %d): image path not readable", name, pid)

        raise TargetNotFound(process_name)

    def _resolve_linux(self, process_name: str) -> Union[PidOwner, CgroupPath]:
        pid = self.table.find_pid_by_exact_name(process_name)
        if pid is None or pid <= 0:
            raise TargetNotFound(process_name)

        cgroup_text = self.table.read_cgroup_file(pid)
        if cgroup_text:
            cgroup_path = parse_sandbox_cgroup(cgroup_text, self.cgroup_markers)
            if cgroup_path:
                return CgroupPath(cgroup_path)

        return PidOwner(pid)
