"""
Unit tests for probes and dump producers (dumpkeeper/backup/producers.py).

Local producers run small Python one-liners in place of pg_dumpall so the
subprocess handling is exercised for real. SSH is mocked at the paramiko
SSHClient level.
"""

import io
import shlex
import socket
import sys
import time
from unittest.mock import patch

import paramiko
import pytest

from conftest import TEST_CREDENTIAL
from dumpkeeper.backup.errors import CycleCancelled, DumpFailed, TargetUnreachable
from dumpkeeper.backup.producers import (
    CommandDumpProducer,
    CommandProbe,
    SSHDumpProducer,
    SSHProbe,
    TCPProbe,
    create_dump_producer,
    create_probe,
)


def python_command(code):
    """Command template running a Python snippet with the test interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


@pytest.fixture
def fast_producer():
    producer = CommandDumpProducer()
    producer.poll_interval = 0.1
    return producer


class TestCommandDumpProducer:
    """Test running the dump tool as a local subprocess."""

    def test_dump_writes_stdout_to_stream(self, backup_config, tmp_path, fast_producer):
        """Test stdout lands in the stream and the credential arrives via env."""
        config = backup_config.with_overrides(dump_command=python_command(
            'import os, sys; sys.stdout.write("pw=" + os.environ["PGPASSWORD"])'
        ))
        out = tmp_path / 'dump.sql'

        with open(out, 'wb') as stream:
            fast_producer.dump(config, TEST_CREDENTIAL, stream)

        assert out.read_bytes() == f'pw={TEST_CREDENTIAL}'.encode()

    def test_credential_not_on_command_line(self, backup_config, tmp_path, fast_producer):
        """Test the rendered command line never contains the credential."""
        config = backup_config.with_overrides(dump_command=python_command(
            'import sys; sys.stdout.write(" ".join(sys.argv))'
        ))
        out = tmp_path / 'dump.sql'

        with open(out, 'wb') as stream:
            fast_producer.dump(config, TEST_CREDENTIAL, stream)

        assert TEST_CREDENTIAL not in out.read_text()

    def test_nonzero_exit_raises_redacted(self, backup_config, tmp_path, fast_producer):
        """Test a failing dump raises DumpFailed with the credential redacted."""
        config = backup_config.with_overrides(dump_command=python_command(
            'import os, sys; sys.stderr.write("auth failed: " + os.environ["PGPASSWORD"]); sys.exit(3)'
        ))

        with open(tmp_path / 'dump.sql', 'wb') as stream:
            with pytest.raises(DumpFailed) as exc_info:
                fast_producer.dump(config, TEST_CREDENTIAL, stream)

        message = str(exc_info.value)
        assert 'status 3' in message
        assert 'auth failed: ***' in message
        assert TEST_CREDENTIAL not in message

    def test_timeout_kills_dump(self, backup_config, tmp_path, fast_producer):
        """Test a dump exceeding dump_timeout is killed."""
        config = backup_config.with_overrides(
            dump_command=python_command('import time; time.sleep(30)'),
            dump_timeout=0.3
        )
        start = time.monotonic()

        with open(tmp_path / 'dump.sql', 'wb') as stream:
            with pytest.raises(DumpFailed, match='timed out'):
                fast_producer.dump(config, TEST_CREDENTIAL, stream)

        assert time.monotonic() - start < 10

    def test_cancellation_kills_dump(self, backup_config, tmp_path, fast_producer):
        """Test a raising cancellation check stops the dump."""
        config = backup_config.with_overrides(dump_command=python_command('import time; time.sleep(30)'))

        def cancel():
            raise CycleCancelled("Backup cycle cancelled")

        start = time.monotonic()
        with open(tmp_path / 'dump.sql', 'wb') as stream:
            with pytest.raises(CycleCancelled):
                fast_producer.dump(config, TEST_CREDENTIAL, stream, cancellation_check=cancel)

        assert time.monotonic() - start < 10

    def test_missing_binary(self, backup_config, tmp_path, fast_producer):
        """Test a missing dump tool raises DumpFailed."""
        config = backup_config.with_overrides(dump_command='no-such-dump-tool -h {host}')

        with open(tmp_path / 'dump.sql', 'wb') as stream:
            with pytest.raises(DumpFailed, match='not found: no-such-dump-tool'):
                fast_producer.dump(config, TEST_CREDENTIAL, stream)


class TestCommandProbe:
    """Test the command based connectivity probe."""

    def test_probe_success(self, backup_config):
        """Test a zero exit status passes."""
        config = backup_config.with_overrides(probe_command=python_command('import sys; sys.exit(0)'))

        CommandProbe().check(config, TEST_CREDENTIAL)

    def test_probe_failure(self, backup_config):
        """Test a non-zero exit raises TargetUnreachable naming the target."""
        config = backup_config.with_overrides(probe_command=python_command(
            'import sys; sys.stderr.write("could not connect to server"); sys.exit(2)'
        ))

        with pytest.raises(TargetUnreachable, match='postgresql.test.svc:5432: could not connect'):
            CommandProbe().check(config, TEST_CREDENTIAL)

    def test_probe_timeout(self, backup_config):
        """Test a hanging probe raises TargetUnreachable."""
        config = backup_config.with_overrides(
            probe_command=python_command('import time; time.sleep(30)'),
            probe_timeout=0.3
        )

        with pytest.raises(TargetUnreachable, match='timed out'):
            CommandProbe().check(config, TEST_CREDENTIAL)

    def test_probe_missing_binary(self, backup_config):
        """Test a missing probe tool raises TargetUnreachable."""
        config = backup_config.with_overrides(probe_command='no-such-psql')

        with pytest.raises(TargetUnreachable, match='not found'):
            CommandProbe().check(config, TEST_CREDENTIAL)


class TestTCPProbe:
    """Test the TCP connectivity probe."""

    def test_listening_port(self, backup_config):
        """Test a listening port passes."""
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(('127.0.0.1', 0))
        server.listen(1)
        try:
            config = backup_config.with_overrides(
                target_host='127.0.0.1', target_port=server.getsockname()[1]
            )
            TCPProbe().check(config, TEST_CREDENTIAL)
        finally:
            server.close()

    def test_closed_port(self, backup_config):
        """Test a closed port raises TargetUnreachable."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(('127.0.0.1', 0))
        port = sock.getsockname()[1]
        sock.close()
        config = backup_config.with_overrides(target_host='127.0.0.1', target_port=port, probe_timeout=2)

        with pytest.raises(TargetUnreachable, match=f'127.0.0.1:{port}'):
            TCPProbe().check(config, TEST_CREDENTIAL)


@pytest.fixture
def mock_ssh():
    """
    Patch paramiko SSHClient.

    Yields:
        Tuple of (client mock, channel mock)
    """
    with patch('dumpkeeper.backup.producers.SSHClient') as mock_client_class:
        client = mock_client_class.return_value
        channel = client.get_transport.return_value.open_session.return_value
        channel.recv_stderr_ready.return_value = False
        channel.recv_exit_status.return_value = 0
        channel.recv.side_effect = [b'-- dump ', b'part two', b'']
        yield client, channel


class TestSSHDumpProducer:
    """Test running the dump tool over SSH."""

    def test_dump_streams_stdout(self, backup_config, mock_ssh):
        """Test remote stdout is written to the stream."""
        client, channel = mock_ssh
        stream = io.BytesIO()

        SSHDumpProducer('bastion', username='backup').dump(backup_config, TEST_CREDENTIAL, stream)

        assert stream.getvalue() == b'-- dump part two'
        channel.update_environment.assert_called_once_with({'PGPASSWORD': TEST_CREDENTIAL})
        channel.exec_command.assert_called_once_with('pg_dumpall -h postgresql.test.svc -p 5432 -U postgres')
        client.connect.assert_called_once_with(
            hostname='bastion', port=22, username='backup', timeout=30
        )
        client.close.assert_called_once()

    def test_dump_remote_failure_redacted(self, backup_config, mock_ssh):
        """Test a non-zero remote exit raises DumpFailed with stderr redacted."""
        client, channel = mock_ssh
        channel.recv.side_effect = [b'']
        channel.recv_stderr_ready.side_effect = [True, False, False]
        channel.recv_stderr.return_value = f'password {TEST_CREDENTIAL} rejected'.encode()
        channel.recv_exit_status.return_value = 1

        with pytest.raises(DumpFailed) as exc_info:
            SSHDumpProducer('bastion').dump(backup_config, TEST_CREDENTIAL, io.BytesIO())

        assert 'status 1' in str(exc_info.value)
        assert 'password *** rejected' in str(exc_info.value)
        client.close.assert_called_once()

    def test_dump_authentication_failure(self, backup_config, mock_ssh):
        """Test SSH authentication errors raise DumpFailed."""
        client, _ = mock_ssh
        client.connect.side_effect = paramiko.AuthenticationException('bad key')

        with pytest.raises(DumpFailed, match='SSH authentication to bastion failed'):
            SSHDumpProducer('bastion').dump(backup_config, TEST_CREDENTIAL, io.BytesIO())

    def test_dump_missing_key_file(self, backup_config, mock_ssh, tmp_path):
        """Test a missing private key raises DumpFailed."""
        producer = SSHDumpProducer('bastion', key_path=str(tmp_path / 'id_missing'))

        with pytest.raises(DumpFailed, match='Private key not found'):
            producer.dump(backup_config, TEST_CREDENTIAL, io.BytesIO())

    def test_known_hosts_rejects_unknown(self, backup_config, mock_ssh, tmp_path):
        """Test unknown hosts are rejected when a known_hosts file is configured."""
        client, _ = mock_ssh
        known_hosts = tmp_path / 'known_hosts'
        known_hosts.write_text('')

        SSHDumpProducer('bastion', known_hosts=str(known_hosts)).dump(
            backup_config, TEST_CREDENTIAL, io.BytesIO()
        )

        client.load_host_keys.assert_called_once_with(str(known_hosts))
        policy = client.set_missing_host_key_policy.call_args[0][0]
        assert isinstance(policy, paramiko.RejectPolicy)

    def test_dump_cancelled(self, backup_config, mock_ssh):
        """Test cancellation propagates and the connection is closed."""
        client, _ = mock_ssh

        def cancel():
            raise CycleCancelled("Backup cycle cancelled")

        with pytest.raises(CycleCancelled):
            SSHDumpProducer('bastion').dump(backup_config, TEST_CREDENTIAL, io.BytesIO(), cancel)

        client.close.assert_called_once()


class TestSSHProbe:
    """Test the probe over SSH."""

    def test_probe_success(self, backup_config, mock_ssh):
        """Test a zero remote exit passes."""
        _, channel = mock_ssh

        SSHProbe('bastion').check(backup_config, TEST_CREDENTIAL)

        command = channel.exec_command.call_args[0][0]
        assert command.startswith('psql -h postgresql.test.svc')

    def test_probe_remote_failure(self, backup_config, mock_ssh):
        """Test a non-zero remote exit raises TargetUnreachable."""
        _, channel = mock_ssh
        channel.recv_exit_status.return_value = 2

        with pytest.raises(TargetUnreachable, match='from bastion'):
            SSHProbe('bastion').check(backup_config, TEST_CREDENTIAL)

    def test_probe_connection_failure(self, backup_config, mock_ssh):
        """Test an unreachable SSH host raises TargetUnreachable."""
        client, _ = mock_ssh
        client.connect.side_effect = OSError('Connection refused')

        with pytest.raises(TargetUnreachable, match='SSH connection to bastion failed'):
            SSHProbe('bastion').check(backup_config, TEST_CREDENTIAL)


class TestFactories:
    """Test probe and producer factories."""

    def test_default_probe_and_producer(self):
        """Test local command execution is the default."""
        assert isinstance(create_probe({}), CommandProbe)
        assert isinstance(create_dump_producer({}), CommandDumpProducer)

    def test_tcp_probe(self):
        """Test PROBE_MODE tcp."""
        assert isinstance(create_probe({'PROBE_MODE': 'tcp'}), TCPProbe)

    def test_ssh_transport(self):
        """Test DUMP_TRANSPORT ssh builds SSH probe and producer."""
        app_config = {'DUMP_TRANSPORT': 'ssh', 'SSH_HOST': 'bastion', 'SSH_PORT': '2222', 'SSH_USER': 'backup'}

        probe = create_probe(app_config)
        producer = create_dump_producer(app_config)

        assert isinstance(probe, SSHProbe)
        assert isinstance(producer, SSHDumpProducer)
        assert producer.port == 2222
        assert producer.username == 'backup'

    def test_ssh_transport_requires_host(self):
        """Test SSH_HOST is required for the ssh transport."""
        with pytest.raises(ValueError, match='SSH_HOST'):
            create_dump_producer({'DUMP_TRANSPORT': 'ssh'})

    def test_invalid_modes(self):
        """Test invalid probe modes and transports are rejected."""
        with pytest.raises(ValueError, match='Invalid probe mode'):
            create_probe({'PROBE_MODE': 'icmp'})
        with pytest.raises(ValueError, match='Invalid dump transport'):
            create_dump_producer({'DUMP_TRANSPORT': 'ftp'})
