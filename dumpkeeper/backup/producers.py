"""
Connectivity probes and dump producers.

Supports:
- CommandProbe / TCPProbe / SSHProbe: fail-fast reachability checks
- CommandDumpProducer: run the engine's dump tool locally (pg_dumpall, redis-cli)
- SSHDumpProducer: run the dump tool on a remote host via SSH and stream it back

The credential is passed to child processes only through the environment
variable named by ``BackupConfig.credential_env`` and is redacted from any
error message built from their output.
"""

import logging
import os
import shlex
import socket
import subprocess
import tempfile
import time
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple

import paramiko
from paramiko import AutoAddPolicy, RejectPolicy, SSHClient

from .config import BackupConfig
from .errors import DumpFailed, TargetUnreachable, redact

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
STDERR_TAIL_BYTES = 2048


class ConnectivityProbe:
    """Interface for a trivial read-only probe against the target."""

    def check(self, config: BackupConfig, credential: str):
        """
        Probe the target.

        Raises:
            TargetUnreachable: If the probe does not succeed
        """
        raise NotImplementedError


class DumpProducer:
    """Interface for a tool that streams a full dump of the target."""

    def dump(
        self,
        config: BackupConfig,
        credential: str,
        stream: BinaryIO,
        cancellation_check: Optional[Callable[[], None]] = None
    ):
        """
        Write a full dump of the target to ``stream``.

        Raises:
            DumpFailed: If the producer fails
        """
        raise NotImplementedError


def _child_env(config: BackupConfig, credential: str) -> dict:
    env = os.environ.copy()
    env[config.credential_env] = credential
    return env


def _stderr_tail(stderr: bytes, credential: str) -> str:
    text = (stderr or b'')[-STDERR_TAIL_BYTES:].decode('utf-8', errors='replace').strip()
    return redact(text, credential) or 'no error output'


class CommandProbe(ConnectivityProbe):
    """Runs the engine's probe command (psql SELECT 1, redis-cli PING)."""

    def check(self, config: BackupConfig, credential: str):
        cmd = config.render_command(config.probe_command)

        try:
            result = subprocess.run(
                cmd,
                env=_child_env(config, credential),
                stdin=subprocess.DEVNULL,
                capture_output=True,
                timeout=config.probe_timeout
            )
        except FileNotFoundError:
            raise TargetUnreachable(f"Probe command not found: {cmd[0]}")
        except subprocess.TimeoutExpired:
            raise TargetUnreachable(
                f"Probe of {config.target_host}:{config.target_port} timed out "
                f"after {config.probe_timeout}s"
            )

        if result.returncode != 0:
            raise TargetUnreachable(
                f"Cannot connect to {config.target_host}:{config.target_port}: "
                f"{_stderr_tail(result.stderr, credential)}"
            )


class TCPProbe(ConnectivityProbe):
    """Checks that the target port accepts TCP connections."""

    def check(self, config: BackupConfig, credential: str):
        try:
            conn = socket.create_connection(
                (config.target_host, config.target_port),
                timeout=config.probe_timeout
            )
        except OSError as e:
            raise TargetUnreachable(
                f"Cannot connect to {config.target_host}:{config.target_port}: {e}"
            ) from e
        conn.close()


class CommandDumpProducer(DumpProducer):
    """
    Runs the engine's dump command with stdout bound to the artifact file.

    The child is killed if the dump exceeds ``config.dump_timeout``, if
    ``cancellation_check`` raises, or if the calling thread is interrupted
    (KeyboardInterrupt), so a cancelled cycle never leaves a dump process
    behind.
    """

    poll_interval = 1.0

    def dump(self, config, credential, stream, cancellation_check=None):
        cmd = config.render_command(config.dump_command)
        timeout = config.dump_timeout or None
        stream.flush()

        logger.debug(f"Running dump command: {shlex.join(cmd)}")

        # stderr goes to a temporary file so a chatty tool cannot block on a full pipe
        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(
                    cmd,
                    env=_child_env(config, credential),
                    stdin=subprocess.DEVNULL,
                    stdout=stream,
                    stderr=stderr
                )
            except FileNotFoundError:
                raise DumpFailed(f"Dump command not found: {cmd[0]}")
            except OSError as e:
                raise DumpFailed(f"Cannot start dump command {cmd[0]}: {e}") from e

            deadline = time.monotonic() + timeout if timeout else None

            try:
                while True:
                    try:
                        returncode = proc.wait(timeout=self.poll_interval)
                        break
                    except subprocess.TimeoutExpired:
                        pass
                    if cancellation_check:
                        cancellation_check()
                    if deadline and time.monotonic() > deadline:
                        raise DumpFailed(f"Dump timed out after {timeout}s")
            except BaseException:
                proc.kill()
                proc.wait()
                raise

            if returncode != 0:
                stderr.seek(0)
                raise DumpFailed(
                    f"Dump command exited with status {returncode}: "
                    f"{_stderr_tail(stderr.read(), credential)}"
                )


class _SSHCommandRunner:
    """
    Shared SSH connection handling for the SSH probe and producer.

    Args:
        host: SSH hostname or IP
        port: SSH port (default 22)
        username: SSH username
        key_path: Path to private key file (optional, agent/default keys otherwise)
        known_hosts: Known hosts file; unknown hosts are rejected when set
        connect_timeout: Seconds to wait for the connection
    """

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: Optional[str] = None,
        key_path: Optional[str] = None,
        known_hosts: Optional[str] = None,
        connect_timeout: float = 30
    ):
        self.host = host
        self.port = int(port)
        self.username = username
        self.key_path = key_path
        self.known_hosts = known_hosts
        self.connect_timeout = connect_timeout

    def _connect(self) -> SSHClient:
        client = SSHClient()

        if self.known_hosts:
            client.load_host_keys(os.path.expanduser(self.known_hosts))
            client.set_missing_host_key_policy(RejectPolicy())
        else:
            client.set_missing_host_key_policy(AutoAddPolicy())

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.connect_timeout
        }

        if self.key_path:
            key_path = Path(self.key_path).expanduser()
            if not key_path.exists():
                raise FileNotFoundError(f"Private key not found: {self.key_path}")
            connect_kwargs['key_filename'] = str(key_path)

        client.connect(**connect_kwargs)
        return client

    def run(
        self,
        command: str,
        env: dict,
        sink: Optional[BinaryIO] = None,
        timeout: Optional[float] = None,
        cancellation_check: Optional[Callable[[], None]] = None
    ) -> Tuple[int, bytes]:
        """
        Run a command remotely, streaming stdout into ``sink``.

        Returns:
            Tuple of (exit status, tail of stderr)

        Raises:
            paramiko.SSHException, OSError: On connection problems
            TimeoutError: If the command exceeds ``timeout``
        """
        client = self._connect()
        try:
            channel = client.get_transport().open_session(timeout=self.connect_timeout)
            # Requires AcceptEnv for the variable on the server
            channel.update_environment(env)
            channel.settimeout(1.0)
            channel.exec_command(command)

            deadline = time.monotonic() + timeout if timeout else None
            stderr_tail = b''

            while True:
                if cancellation_check:
                    cancellation_check()
                if deadline and time.monotonic() > deadline:
                    channel.close()
                    raise TimeoutError(f"Remote command timed out after {timeout}s")

                while channel.recv_stderr_ready():
                    stderr_tail = (stderr_tail + channel.recv_stderr(CHUNK_SIZE))[-STDERR_TAIL_BYTES:]

                try:
                    data = channel.recv(CHUNK_SIZE)
                except socket.timeout:
                    continue

                if not data:
                    break
                if sink is not None:
                    sink.write(data)

            status = channel.recv_exit_status()
            while channel.recv_stderr_ready():
                stderr_tail = (stderr_tail + channel.recv_stderr(CHUNK_SIZE))[-STDERR_TAIL_BYTES:]

            return status, stderr_tail
        finally:
            client.close()


class SSHProbe(_SSHCommandRunner, ConnectivityProbe):
    """Runs the engine's probe command on the SSH host."""

    def check(self, config, credential):
        command = shlex.join(config.render_command(config.probe_command))

        try:
            status, stderr = self.run(
                command,
                {config.credential_env: credential},
                timeout=config.probe_timeout
            )
        except paramiko.AuthenticationException as e:
            raise TargetUnreachable(f"SSH authentication to {self.host} failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise TargetUnreachable(f"SSH connection to {self.host} failed: {e}") from e

        if status != 0:
            raise TargetUnreachable(
                f"Cannot connect to {config.target_host}:{config.target_port} "
                f"from {self.host}: {_stderr_tail(stderr, credential)}"
            )


class SSHDumpProducer(_SSHCommandRunner, DumpProducer):
    """Runs the engine's dump command on the SSH host and streams stdout back."""

    def dump(self, config, credential, stream, cancellation_check=None):
        command = shlex.join(config.render_command(config.dump_command))

        try:
            status, stderr = self.run(
                command,
                {config.credential_env: credential},
                sink=stream,
                timeout=config.dump_timeout or None,
                cancellation_check=cancellation_check
            )
        except TimeoutError as e:
            raise DumpFailed(str(e)) from e
        except paramiko.AuthenticationException as e:
            raise DumpFailed(f"SSH authentication to {self.host} failed: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise DumpFailed(f"SSH dump on {self.host} failed: {redact(e, credential)}") from e

        if status != 0:
            raise DumpFailed(
                f"Remote dump command exited with status {status}: "
                f"{_stderr_tail(stderr, credential)}"
            )


def create_probe(app_config) -> ConnectivityProbe:
    """
    Factory function to create the connectivity probe.

    PROBE_MODE 'command' runs the engine's probe command (over SSH when
    DUMP_TRANSPORT is 'ssh'); 'tcp' only checks the port.

    Raises:
        ValueError: If PROBE_MODE is invalid
    """
    mode = app_config.get('PROBE_MODE', 'command')

    if mode == 'tcp':
        return TCPProbe()
    elif mode == 'command':
        if app_config.get('DUMP_TRANSPORT', 'local') == 'ssh':
            return SSHProbe(**_ssh_kwargs(app_config))
        return CommandProbe()
    else:
        raise ValueError(f"Invalid probe mode: {mode}")


def create_dump_producer(app_config) -> DumpProducer:
    """
    Factory function to create the dump producer.

    Raises:
        ValueError: If DUMP_TRANSPORT is invalid
    """
    transport = app_config.get('DUMP_TRANSPORT', 'local')

    if transport == 'local':
        return CommandDumpProducer()
    elif transport == 'ssh':
        return SSHDumpProducer(**_ssh_kwargs(app_config))
    else:
        raise ValueError(f"Invalid dump transport: {transport}")


def _ssh_kwargs(app_config) -> dict:
    if not app_config.get('SSH_HOST'):
        raise ValueError("SSH_HOST is required when DUMP_TRANSPORT is 'ssh'")

    return {
        'host': app_config['SSH_HOST'],
        'port': app_config.get('SSH_PORT', 22),
        'username': app_config.get('SSH_USER'),
        'key_path': app_config.get('SSH_KEY_PATH'),
        'known_hosts': app_config.get('SSH_KNOWN_HOSTS'),
    }
