"""
Process lifecycle tracking for managed PocketBase servers.

One server per environment is tracked through a PID file under the
environment directory. The PID file is the only source of truth shared
between invocations, so every read verifies that the recorded process is
still alive and removes the file when it is not.

Signals are sent through a small capability object (terminate, kill,
is_alive) so callers and tests never deal with platform signal numbers.
"""
import logging
import math
import os
import socket
import subprocess
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Mapping, Optional, TypedDict

import psutil
import requests

from .config import Config, Environment
from .errors import (
    AlreadyRunningError,
    NotFoundError,
    PocketBaseToolError,
    ReadyTimeoutError,
    SignalFailedError,
    StaleHandleError,
    StopTimeoutError,
)

logger = logging.getLogger(__name__)

# Attempts and interval used to confirm a forced kill took effect.
KILL_GRACE_ATTEMPTS = 5
KILL_GRACE_INTERVAL = 0.2


class StopResult(str, Enum):
    STOPPED = "stopped"
    NOT_RUNNING = "not_running"


class ServerState(str, Enum):
    RUNNING = "running"
    PORT_IN_USE = "port_in_use"
    STOPPED = "stopped"


@dataclass
class ServerStatus:
    environment: Environment
    state: ServerState
    port: int
    pid: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self.state is ServerState.RUNNING


@dataclass
class LaunchSpec:
    argv: List[str]
    cwd: Optional[str] = None
    env: Optional[Mapping[str, str]] = None


class ProcessHandleDict(TypedDict):
    pid: int
    environment: str
    port: int
    host: str
    logfile: str
    started_at: float


class ProcessHandle:
    def __init__(
        self, pid: int, environment: Environment, port: int, host: str,
        logfile: str, started_at: float, proc: Optional[subprocess.Popen] = None
    ):
        self.pid = pid
        self.environment = environment
        self.port = port
        self.host = host
        self.logfile = logfile
        self.started_at = started_at
        self.proc = proc

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> ProcessHandleDict:
        return ProcessHandleDict(
            pid=self.pid,
            environment=self.environment.value,
            port=self.port,
            host=self.host,
            logfile=self.logfile,
            started_at=self.started_at,
        )


class PsutilSignaller:
    """Default terminate/kill/is_alive capability backed by psutil."""

    def is_alive(self, pid: int) -> bool:
        try:
            proc = psutil.Process(pid)
            return proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def terminate(self, pid: int) -> None:
        self._send(pid, "terminate")

    def kill(self, pid: int) -> None:
        self._send(pid, "kill")

    def _send(self, pid: int, action: str) -> None:
        try:
            proc = psutil.Process(pid)
            getattr(proc, action)()
        except psutil.NoSuchProcess:
            # Already gone counts as delivered.
            return
        except psutil.AccessDenied as e:
            raise SignalFailedError(pid, f"{action} denied ({e})") from e
        except OSError as e:
            raise SignalFailedError(pid, f"{action} failed ({e})") from e


def read_pid_file(pid_file: str) -> Optional[int]:
    """Return the recorded pid, or None when the file is missing or garbled."""
    try:
        with open(pid_file, "r") as f:
            raw = f.read().strip()
    except FileNotFoundError:
        return None
    try:
        pid = int(raw)
    except ValueError:
        return None
    return pid if pid > 0 else None


def write_pid_file(pid_file: str, pid: int) -> None:
    os.makedirs(os.path.dirname(pid_file), exist_ok=True)
    with open(pid_file, "w") as f:
        f.write(f"{pid}\n")


def remove_pid_file(pid_file: str) -> bool:
    try:
        os.remove(pid_file)
        return True
    except FileNotFoundError:
        return False


def port_in_use(host: str, port: int, timeout: float = 1.0) -> bool:
    """True if something accepts connections on host:port."""
    connect_host = "127.0.0.1" if host in ("0.0.0.0", "") else host
    try:
        with socket.create_connection((connect_host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_until_ready(
    base_url: str,
    timeout: int = 30,
    interval: float = 1.0,
    path: str = "/api/health",
) -> None:
    """Poll ``base_url + path`` until it answers with a 2xx status.

    Raises ReadyTimeoutError once ``timeout`` seconds worth of attempts
    have been used.
    """
    url = base_url.rstrip("/") + path
    attempts = max(1, int(math.ceil(timeout / interval)))
    logger.debug("Waiting for PocketBase at %s to be ready...", base_url)
    for attempt in range(1, attempts + 1):
        try:
            resp = requests.get(url, timeout=2)
            if resp.ok:
                logger.debug("PocketBase is ready!")
                return
        except requests.RequestException:
            pass
        if attempt % 5 == 0:
            logger.debug("Attempt %d/%d - PocketBase not ready yet...", attempt, attempts)
        if attempt < attempts:
            time.sleep(interval)
    raise ReadyTimeoutError(
        f"PocketBase did not become ready within {timeout} seconds at {base_url}"
    )


class ProcessTracker:

    def __init__(self, cfg: Config, signaller: Optional[PsutilSignaller] = None):
        self.cfg = cfg
        self.signaller = signaller or PsutilSignaller()
        self._children: Dict[int, subprocess.Popen] = {}

    def recorded_pid(self, env: Environment) -> int:
        """Return the live recorded pid.

        Raises NotFoundError when no usable PID file exists and
        StaleHandleError when the recorded process is gone. Either way
        the file is removed before raising.
        """
        pid_file = self.cfg.pid_file(env)
        pid = read_pid_file(pid_file)
        if pid is None:
            if remove_pid_file(pid_file):
                logger.debug("Removed unreadable PID file %s", pid_file)
            raise NotFoundError(f"No PID file for {env} environment at {pid_file}")
        if not self.signaller.is_alive(pid):
            logger.debug("Removing stale PID file %s (PID %d)", pid_file, pid)
            remove_pid_file(pid_file)
            self._reap(pid)
            raise StaleHandleError(pid, pid_file)
        return pid

    def live_pid(self, env: Environment) -> Optional[int]:
        try:
            return self.recorded_pid(env)
        except (NotFoundError, StaleHandleError):
            return None

    def _ensure_not_running(self, env: Environment) -> None:
        pid = self.live_pid(env)
        if pid is not None:
            raise AlreadyRunningError(
                f"PocketBase {env} server is already running (PID: {pid})"
            )

    def start(
        self, env: Environment, spec: LaunchSpec, port: Optional[int] = None,
        host: Optional[str] = None
    ) -> ProcessHandle:
        self._ensure_not_running(env)
        os.makedirs(self.cfg.env_dir(env), exist_ok=True)
        logfile = self.cfg.log_file(env)
        with open(logfile, "a") as log:
            proc = subprocess.Popen(
                spec.argv,
                cwd=spec.cwd,
                env=dict(spec.env) if spec.env is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        write_pid_file(self.cfg.pid_file(env), proc.pid)
        self._children[proc.pid] = proc
        logger.debug("Started %s as PID %d", spec.argv[0], proc.pid)
        return ProcessHandle(
            pid=proc.pid,
            environment=env,
            port=port or self.cfg.port(env),
            host=host or self.cfg.host,
            logfile=logfile,
            started_at=time.time(),
            proc=proc,
        )

    def run_foreground(self, env: Environment, spec: LaunchSpec, quiet: bool = False) -> int:
        """Run attached to the terminal; the PID file lives as long as the process."""
        self._ensure_not_running(env)
        os.makedirs(self.cfg.env_dir(env), exist_ok=True)
        output = subprocess.DEVNULL if quiet else None
        proc = subprocess.Popen(
            spec.argv,
            cwd=spec.cwd,
            env=dict(spec.env) if spec.env is not None else None,
            stdout=output,
            stderr=output,
        )
        pid_file = self.cfg.pid_file(env)
        write_pid_file(pid_file, proc.pid)
        try:
            return proc.wait()
        except KeyboardInterrupt:
            proc.terminate()
            try:
                proc.wait(timeout=self.cfg.stop_retries * self.cfg.stop_interval)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            return 130
        finally:
            remove_pid_file(pid_file)

    def stop(self, env: Environment) -> StopResult:
        try:
            pid = self.recorded_pid(env)
        except (NotFoundError, StaleHandleError) as e:
            logger.debug("%s", e)
            return StopResult.NOT_RUNNING
        logger.info("Stopping PocketBase %s server (PID: %d)...", env, pid)
        self.signaller.terminate(pid)
        if not self._wait_for_exit(pid, self.cfg.stop_retries, self.cfg.stop_interval):
            logger.warning("Process didn't stop gracefully, forcing...")
            self.signaller.kill(pid)
            if not self._wait_for_exit(pid, KILL_GRACE_ATTEMPTS, KILL_GRACE_INTERVAL):
                raise StopTimeoutError(pid)
        remove_pid_file(self.cfg.pid_file(env))
        logger.info("PocketBase %s server stopped", env)
        return StopResult.STOPPED

    def _wait_for_exit(self, pid: int, retries: int, interval: float) -> bool:
        for _ in range(retries):
            self._reap(pid)
            if not self.signaller.is_alive(pid):
                self._reap(pid)
                return True
            time.sleep(interval)
        self._reap(pid)
        return not self.signaller.is_alive(pid)

    def _reap(self, pid: int) -> None:
        proc = self._children.get(pid)
        if proc is not None and proc.poll() is not None:
            self._children.pop(pid, None)

    def status(self, env: Environment) -> ServerStatus:
        port = self.cfg.port(env)
        pid = self.live_pid(env)
        if pid is not None:
            return ServerStatus(env, ServerState.RUNNING, port, pid)
        if port_in_use(self.cfg.host, port):
            return ServerStatus(env, ServerState.PORT_IN_USE, port)
        return ServerStatus(env, ServerState.STOPPED, port)

    def status_all(self) -> List[ServerStatus]:
        return [self.status(env) for env in Environment]

    def stop_all(self) -> Dict[Environment, StopResult]:
        results: Dict[Environment, StopResult] = {}
        errors: List[PocketBaseToolError] = []
        for env in Environment:
            try:
                results[env] = self.stop(env)
            except PocketBaseToolError as e:
                logger.error("Failed to stop %s server: %s", env, e)
                errors.append(e)
        if errors:
            raise errors[0]
        return results

