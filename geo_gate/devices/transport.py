"""
Command transports for the Linux backend: the local host or a remote host over SSH.
"""

import asyncio
import shlex
import time
from abc import ABC, abstractmethod
from typing import Optional, Sequence

import paramiko

from ..core.credentials import credential_manager
from ..core.logging_config import get_logger
from .base import CommandResult

logger = get_logger(__name__)


def _decode(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("utf-8", errors="replace")


class CommandTransport(ABC):
    """Runs argv-style commands and reports their outcome."""

    def __init__(self, use_sudo: bool = False):
        self.use_sudo = use_sudo

    def build_argv(self, argv: Sequence[str]) -> list:
        return (["sudo", "-n"] if self.use_sudo else []) + list(argv)

    @abstractmethod
    async def execute(
        self, argv: Sequence[str], input_data: Optional[str] = None
    ) -> CommandResult:
        """Run ``argv``, feeding ``input_data`` on stdin when given."""

    async def close(self) -> None:
        return None

    def describe(self) -> str:
        return self.__class__.__name__


class LocalTransport(CommandTransport):
    """Runs commands on this host."""

    async def execute(
        self, argv: Sequence[str], input_data: Optional[str] = None
    ) -> CommandResult:
        command = shlex.join(argv)
        start_time = time.time()
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_argv(argv),
                stdin=asyncio.subprocess.PIPE if input_data is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout_data, stderr_data = await process.communicate(
                input_data.encode("utf-8") if input_data is not None else None
            )
        except OSError as e:
            return CommandResult(
                command=command,
                success=False,
                output="",
                error=f"Command execution failed: {e}",
                execution_time=time.time() - start_time,
            )

        result = CommandResult(
            command=command,
            success=process.returncode == 0,
            output=_decode(stdout_data),
            error=_decode(stderr_data) if stderr_data else None,
            exit_code=process.returncode,
            execution_time=time.time() - start_time,
        )
        logger.debug("Executed: %s (exit_code=%s)", command, result.exit_code)
        return result

    def describe(self) -> str:
        return "localhost"


class SSHTransport(CommandTransport):
    """Runs commands on a remote host through paramiko."""

    def __init__(
        self,
        host: str,
        username: str,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        port: int = 22,
        timeout: int = 30,
        use_sudo: bool = True,
    ):
        super().__init__(use_sudo=use_sudo)
        self.host = host
        self.username = username
        self.password = password
        self.private_key = private_key
        self.port = port
        self.timeout = timeout
        self._ssh_client: Optional[paramiko.SSHClient] = None

    def _connect_kwargs(self) -> dict:
        return {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "look_for_keys": True,
            "allow_agent": credential_manager.allow_ssh_agent,
        }

    def _try_connect(self, **overrides) -> bool:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs = self._connect_kwargs()
        kwargs.update(overrides)
        try:
            client.connect(**kwargs)
        except (paramiko.SSHException, OSError) as e:
            logger.debug("SSH authentication to %s failed: %s", self.host, e)
            client.close()
            return False
        self._ssh_client = client
        return True

    def _connect_blocking(self) -> bool:
        if self.private_key:
            key = credential_manager.load_private_key(self.private_key)
            if key and self._try_connect(pkey=key, look_for_keys=False):
                logger.info("Connected to %s using private key", self.host)
                return True
            logger.warning("Could not authenticate with key %s", self.private_key)

        if self.password:
            if self._try_connect(
                password=self.password, look_for_keys=False, allow_agent=False
            ):
                logger.info("Connected to %s using password", self.host)
                return True
            logger.error("Password authentication to %s failed", self.host)
            return False

        if self._try_connect():
            logger.info("Connected to %s using default SSH authentication", self.host)
            return True

        # Last resort: prompt for password
        password = credential_manager.get_ssh_password(self.username, self.host)
        if password and self._try_connect(
            password=password, look_for_keys=False, allow_agent=False
        ):
            logger.info("Connected to %s using prompted password", self.host)
            return True

        logger.error("No authentication method available for %s", self.host)
        return False

    async def connect(self) -> bool:
        if self._ssh_client:
            return True
        return await asyncio.to_thread(self._connect_blocking)

    async def close(self) -> None:
        if self._ssh_client:
            self._ssh_client.close()
            self._ssh_client = None

    def _execute_blocking(self, shell_command: str, input_data: Optional[str]):
        stdin, stdout, stderr = self._ssh_client.exec_command(shell_command)
        if input_data is not None:
            stdin.write(input_data)
            stdin.channel.shutdown_write()
        stdout_data = stdout.read()
        stderr_data = stderr.read()
        exit_code = stdout.channel.recv_exit_status()
        return stdout_data, stderr_data, exit_code

    async def execute(
        self, argv: Sequence[str], input_data: Optional[str] = None
    ) -> CommandResult:
        command = shlex.join(argv)
        if not await self.connect():
            return CommandResult(
                command=command,
                success=False,
                output="",
                error=f"Not connected to {self.host}",
                execution_time=0.0,
            )

        start_time = time.time()
        shell_command = shlex.join(self.build_argv(argv))
        try:
            stdout_data, stderr_data, exit_code = await asyncio.to_thread(
                self._execute_blocking, shell_command, input_data
            )
        except (paramiko.SSHException, OSError) as e:
            return CommandResult(
                command=command,
                success=False,
                output="",
                error=f"Command execution failed: {e}",
                execution_time=time.time() - start_time,
            )

        result = CommandResult(
            command=command,
            success=exit_code == 0,
            output=_decode(stdout_data),
            error=_decode(stderr_data) if stderr_data else None,
            exit_code=exit_code,
            execution_time=time.time() - start_time,
        )
        logger.debug("Executed on %s: %s (exit_code=%s)", self.host, command, exit_code)
        return result

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"
