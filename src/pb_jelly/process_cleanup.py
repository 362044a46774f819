import logging
import time
from typing import Callable, List, Optional, Set, Tuple

import psutil

from .config import Config, Environment
from .process_tracker import remove_pid_file

logger = logging.getLogger(__name__)

# (pid, name, cmdline, listen_ports)
ProcessEntry = Tuple[int, str, str, Set[int]]


def _get_listen_ports(p: psutil.Process) -> Set[int]:
    """Get listen ports for a psutil process."""
    listen_ports = set()
    try:
        for c in p.net_connections(kind='inet'):
            if c.status == psutil.CONN_LISTEN and c.laddr:
                listen_ports.add(c.laddr[1])
    except (psutil.AccessDenied, psutil.NoSuchProcess):
        pass
    return listen_ports


def _is_pocketbase_server(name: str, cmdline: str) -> bool:
    return ('pocketbase' in name or 'pocketbase' in cmdline) and 'serve' in cmdline


def gather_pocketbase_processes() -> List[ProcessEntry]:
    """Gather every running ``pocketbase ... serve`` process."""
    entries = []
    for p in psutil.process_iter():
        try:
            name = (p.name() or '').lower()
            cmdline = ' '.join(p.cmdline() or []).lower()
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
        except psutil.AccessDenied:
            logger.debug("Access denied inspecting process %s", p.pid)
            continue
        if _is_pocketbase_server(name, cmdline):
            entries.append((p.pid, name, cmdline, _get_listen_ports(p)))
    return entries


def _signal(pid: int, action: str) -> bool:
    try:
        getattr(psutil.Process(pid), action)()
        return True
    except psutil.NoSuchProcess:
        return True
    except psutil.AccessDenied:
        return False


def remove_pid_files(cfg: Config) -> None:
    for env in Environment:
        if remove_pid_file(cfg.pid_file(env)):
            logger.info("Removing %s PID file", env)


def kill_all(
    cfg: Config,
    force: bool = False,
    confirm: Optional[Callable[[str], bool]] = None,
    gather: Callable[[], List[ProcessEntry]] = gather_pocketbase_processes,
    grace: float = 1.0,
) -> Tuple[List[int], List[int]]:
    """Terminate every PocketBase server process, then force kill survivors.

    Returns (killed, not_killed) pid lists. Returns two empty lists when
    nothing was found or the user cancelled.
    """
    logger.warning("Searching for all PocketBase processes...")
    entries = gather()
    if not entries:
        logger.info("No PocketBase processes found")
        remove_pid_files(cfg)
        return [], []

    logger.info("Found PocketBase processes:")
    for pid, _, cmdline, listen_ports in entries:
        ports = f" listening={sorted(listen_ports)}" if listen_ports else ""
        logger.info("  PID %d: %s%s", pid, cmdline, ports)

    if not force:
        logger.warning("This will kill ALL PocketBase processes")
        if not (confirm and confirm("Continue?")):
            logger.info("Cancelled")
            return [], []

    killed, not_killed = [], []
    for pid, _, _, _ in entries:
        if _signal(pid, 'terminate'):
            logger.info("Killed process %d", pid)
            killed.append(pid)
        else:
            logger.warning("Could not kill process %d (may require sudo)", pid)
            not_killed.append(pid)

    time.sleep(grace)

    remaining = [entry[0] for entry in gather()]
    if remaining:
        logger.warning("Some processes still running, forcing kill...")
        for pid in remaining:
            if _signal(pid, 'kill'):
                logger.info("Force killed process %d", pid)
                if pid not in killed:
                    killed.append(pid)
            else:
                logger.error("Could not force kill process %d (may require sudo)", pid)
                if pid in killed:
                    killed.remove(pid)
                if pid not in not_killed:
                    not_killed.append(pid)

    remove_pid_files(cfg)
    logger.info("All PocketBase processes terminated")
    return killed, not_killed
