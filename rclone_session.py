"""
Lifecycle of the background rclone worker used for cloud-stored backups.

The worker (``rclone rcd``) exposes an HTTP control API on localhost that is
protected by a one-time Basic-auth credential generated for every session.
"""
from __future__ import annotations

import logging
import secrets
import shutil
import string
import subprocess
import time
from pathlib import Path, PureWindowsPath
from typing import Any, Dict, List, Optional, Tuple

import psutil
import requests

from storage_backends import StorageError


logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "rclone"
DEFAULT_PORT = 5572
DEFAULT_HTTP_TIMEOUT = 60.0
CREDENTIAL_ALPHABET = string.ascii_letters + string.digits
CREDENTIAL_LENGTH = 18
WORKER_COMMAND = "rcd"
SHUTDOWN_TIMEOUT = 5.0


class SessionError(StorageError):
    """Raised when the rclone control plane cannot be used."""


def generate_credential(length: int = CREDENTIAL_LENGTH) -> str:
    """Random string with at least one uppercase letter and one digit."""
    if length < CREDENTIAL_LENGTH:
        raise ValueError(f"Credential length must be at least {CREDENTIAL_LENGTH}.")
    characters = [secrets.choice(CREDENTIAL_ALPHABET) for _ in range(length)]
    characters.append(secrets.choice(string.ascii_uppercase))
    characters.append(secrets.choice(string.digits))
    secrets.SystemRandom().shuffle(characters)
    return "".join(characters)


def _is_worker_command(cmdline: List[str], executable_name: str) -> bool:
    if not cmdline:
        return False
    program = PureWindowsPath(cmdline[0]).stem.lower()
    return program == executable_name and WORKER_COMMAND in cmdline[1:]


def terminate_competing_workers(executable: str) -> int:
    """Stop every other ``rclone rcd`` process so the control port is free."""
    executable_name = PureWindowsPath(executable).stem.lower()

    victims = []
    for process in psutil.process_iter(["pid", "cmdline"]):
        try:
            cmdline = process.info.get("cmdline") or []
            if not _is_worker_command(cmdline, executable_name):
                continue
            logger.info("Terminating competing rclone worker (pid %s)", process.pid)
            process.terminate()
            victims.append(process)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as error:
            logger.warning("Could not terminate rclone worker: %s", error)

    if victims:
        _, alive = psutil.wait_procs(victims, timeout=SHUTDOWN_TIMEOUT)
        for process in alive:
            try:
                process.kill()
            except psutil.NoSuchProcess:
                continue
    return len(victims)


class RemoteSyncSession:
    """Owns one rclone worker process and its authenticated control API.

    The worker is launched lazily by the first ``call``. Readiness is checked
    once before each call; when the worker is not running a single re-check is
    made after ``readiness_recheck_delay`` seconds (0 by default) and a
    ``SessionError`` is raised if it still is not. No retry loop is attempted.
    """

    def __init__(
        self,
        executable: str = DEFAULT_EXECUTABLE,
        *,
        port: int = DEFAULT_PORT,
        readiness_recheck_delay: float = 0.0,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ) -> None:
        self.executable = executable
        self.port = port
        self.readiness_recheck_delay = readiness_recheck_delay
        self.timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._credential: Optional[Tuple[str, str]] = None

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def started(self) -> bool:
        return self._process is not None

    def _resolve_executable(self) -> str:
        resolved = shutil.which(self.executable)
        if resolved:
            return resolved
        if Path(self.executable).is_file():
            return self.executable
        raise SessionError(f"rclone executable not found: {self.executable}")

    def start(self) -> None:
        executable = self._resolve_executable()
        terminate_competing_workers(executable)
        self.close()

        user = generate_credential()
        password = generate_credential()
        command = [
            executable,
            WORKER_COMMAND,
            "--rc-addr",
            f"localhost:{self.port}",
            "--rc-user",
            user,
            "--rc-pass",
            password,
        ]
        logger.info("Starting rclone worker on %s", self.base_url)
        try:
            self._process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as error:
            raise SessionError(f"Failed to launch rclone worker: {error}") from error
        self._credential = (user, password)

    def is_ready(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def ensure_ready(self) -> None:
        if self.is_ready():
            return
        # single re-check, no backoff
        if self.readiness_recheck_delay > 0:
            time.sleep(self.readiness_recheck_delay)
        if not self.is_ready():
            raise SessionError("rclone control API unavailable")

    def call(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.started:
            self.start()
        self.ensure_ready()

        url = f"{self.base_url}/{endpoint}"
        logger.debug("POST %s %s", url, payload)
        try:
            response = requests.post(
                url, json=payload, auth=self._credential, timeout=self.timeout
            )
        except requests.RequestException as error:
            raise SessionError(f"rclone control API call {endpoint} failed: {error}") from error

        if response.status_code != 200:
            raise SessionError(
                f"rclone control API call {endpoint} returned HTTP "
                f"{response.status_code}: {response.text.strip()}"
            )
        try:
            return response.json()
        except ValueError as error:
            raise SessionError(
                f"rclone control API call {endpoint} returned invalid JSON."
            ) from error

    def close(self) -> None:
        process, self._process = self._process, None
        self._credential = None
        if process is None:
            return
        if process.poll() is None:
            logger.info("Stopping rclone worker (pid %s)", process.pid)
            process.terminate()
            try:
                process.wait(timeout=SHUTDOWN_TIMEOUT)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

    def __enter__(self) -> "RemoteSyncSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
