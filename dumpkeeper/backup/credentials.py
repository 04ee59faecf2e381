"""
Credential providers for the dump credential.

Supports:
- KubernetesSecretProvider: Read a key from a Kubernetes secret via kubectl
- MountedSecretProvider: Read a secret file mounted into the pod
- SecretsManagerProvider: Read a secret from AWS Secrets Manager
- ChainedCredentialProvider: First provider that yields a non-empty value

Every provider is looked up once per cycle and never caches, so a rotated
credential is picked up by the next run.
"""

import base64
import binascii
import json
import logging
import subprocess
from pathlib import Path
from typing import Any, List, Mapping, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)


class CredentialProvider:
    """Interface for secret lookups keyed by a logical secret name."""

    description = 'credential provider'

    def lookup(self, name: str) -> Optional[str]:
        """
        Look up a secret value.

        Args:
            name: Logical secret name (e.g. 'postgres-password')

        Returns:
            Secret value, or None if not found
        """
        raise NotImplementedError


class KubernetesSecretProvider(CredentialProvider):
    """
    Reads one key of a Kubernetes secret through kubectl.

    Equivalent to:
        kubectl get secret {secret} -o jsonpath='{.data.{name}}' | base64 -d
    """

    def __init__(
        self,
        secret_name: str,
        namespace: Optional[str] = None,
        kubectl: str = 'kubectl',
        kubeconfig: Optional[str] = None,
        timeout: float = 30
    ):
        self.secret_name = secret_name
        self.namespace = namespace
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.timeout = timeout
        self.description = f"kubernetes secret {secret_name}"

    def _command(self, name: str) -> List[str]:
        # jsonpath needs dots in key names escaped
        key = name.replace('.', '\\.')
        cmd = [self.kubectl, 'get', 'secret', self.secret_name, '-o', f'jsonpath={{.data.{key}}}']
        if self.namespace:
            cmd.extend(['-n', self.namespace])
        if self.kubeconfig:
            cmd.extend(['--kubeconfig', self.kubeconfig])
        return cmd

    def lookup(self, name: str) -> Optional[str]:
        try:
            result = subprocess.run(
                self._command(name),
                capture_output=True,
                timeout=self.timeout,
                check=False
            )
        except FileNotFoundError:
            logger.info(f"kubectl not available ({self.kubectl}), skipping {self.description}")
            return None
        except subprocess.TimeoutExpired:
            logger.warning(f"Timed out reading {self.description}")
            return None

        if result.returncode != 0:
            logger.info(f"Secret {self.secret_name} not readable (exit code {result.returncode})")
            return None

        encoded = result.stdout.strip()
        if not encoded:
            return None

        try:
            return base64.b64decode(encoded, validate=True).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError):
            logger.warning(f"Key {name} of {self.description} is not valid base64")
            return None


class MountedSecretProvider(CredentialProvider):
    """
    Reads a secret from a file mounted into the container.

    Kubernetes mounts each key of a secret as ``{directory}/{key}``.
    """

    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.description = f"mounted secret {directory}"

    def lookup(self, name: str) -> Optional[str]:
        path = self.directory / name

        if not path.is_file():
            return None

        try:
            value = path.read_text().rstrip('\r\n')
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to read secret file {path}: {e}")
            return None

        return value or None


class SecretsManagerProvider(CredentialProvider):
    """
    Reads a secret from AWS Secrets Manager.

    The secret id is ``{prefix}{name}``. If ``json_key`` is set, the secret
    string is parsed as JSON and that key is returned.
    """

    def __init__(
        self,
        prefix: str = '',
        region: str = 'us-east-1',
        json_key: Optional[str] = None,
        client=None
    ):
        self.prefix = prefix
        self.region = region
        self.json_key = json_key
        self.description = f"secrets manager {prefix}*"
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = boto3.client('secretsmanager', region_name=self.region)
        return self._client

    def lookup(self, name: str) -> Optional[str]:
        secret_id = f"{self.prefix}{name}"

        try:
            response = self.client.get_secret_value(SecretId=secret_id)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            if error_code == 'ResourceNotFoundException':
                return None
            logger.warning(f"Secrets Manager lookup failed for {secret_id} ({error_code})")
            return None
        except BotoCoreError as e:
            logger.warning(f"Secrets Manager unavailable: {e}")
            return None

        value = response.get('SecretString')
        if value is None and response.get('SecretBinary') is not None:
            value = response['SecretBinary'].decode('utf-8')

        if value and self.json_key:
            try:
                value = json.loads(value).get(self.json_key)
            except (ValueError, AttributeError):
                logger.warning(f"Secret {secret_id} is not a JSON object")
                return None

        return value or None


class ChainedCredentialProvider(CredentialProvider):
    """Tries each provider in order and returns the first non-empty value."""

    def __init__(self, providers: List[CredentialProvider]):
        self.providers = providers
        self.description = ', '.join(p.description for p in providers) or 'no providers'

    def lookup(self, name: str) -> Optional[str]:
        for provider in self.providers:
            value = provider.lookup(name)
            if value:
                logger.debug(f"Credential {name} found in {provider.description}")
                return value
        return None


def create_credential_provider(app_config: Mapping[str, Any]) -> CredentialProvider:
    """
    Factory function to build the credential chain from configuration.

    CREDENTIAL_SOURCES is a comma separated list of 'kubernetes', 'file'
    and 'aws', tried in that order.

    Args:
        app_config: Flask config mapping

    Returns:
        ChainedCredentialProvider instance

    Raises:
        ValueError: If a source name is invalid
    """
    sources = [s.strip() for s in app_config.get('CREDENTIAL_SOURCES', 'kubernetes,file').split(',') if s.strip()]
    providers = []

    for source in sources:
        if source == 'kubernetes':
            providers.append(KubernetesSecretProvider(
                secret_name=app_config.get('K8S_SECRET_NAME', 'postgresql-secret'),
                namespace=app_config.get('K8S_NAMESPACE'),
                kubectl=app_config.get('KUBECTL', 'kubectl'),
                kubeconfig=app_config.get('KUBECONFIG')
            ))
        elif source == 'file':
            providers.append(MountedSecretProvider(
                app_config.get('SECRET_MOUNT_DIR', '/var/run/secrets/postgresql')
            ))
        elif source == 'aws':
            providers.append(SecretsManagerProvider(
                prefix=app_config.get('AWS_SECRET_PREFIX', ''),
                region=app_config.get('AWS_REGION', 'us-east-1'),
                json_key=app_config.get('AWS_SECRET_JSON_KEY')
            ))
        else:
            raise ValueError(f"Invalid credential source: {source}")

    return ChainedCredentialProvider(providers)
