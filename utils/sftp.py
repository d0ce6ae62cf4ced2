"""
SFTP Object Store

Destination storage for extracted export entries. Each entry is written to
`{SFTP_REMOTE_BASE}/{destination_key}` over an SSH-key authenticated SFTP
connection, with remote directory creation, size verification and retries.

Transfers are blocking (paramiko), so `SftpObjectStore.put` runs them in a
worker thread and can be awaited from the event loop.
"""

import asyncio
import logging
import posixpath
import time
from pathlib import Path
from typing import IO, Callable, Optional, Tuple

import paramiko
from paramiko import SFTPClient, SSHClient

from utils.config import settings

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], Tuple[SSHClient, SFTPClient]]


def get_sftp_client() -> Tuple[SSHClient, SFTPClient]:
    """
    Create SFTP client connection using SSH key authentication.

    Returns:
        Tuple of (ssh_client, sftp_client)

    Raises:
        ValueError: If SFTP settings are incomplete or the key needs a passphrase
        FileNotFoundError: If SSH key file not found
        IOError: If connection cannot be established
    """
    if not settings.SFTP_HOST:
        raise ValueError("SFTP_HOST is not configured")

    if not settings.SFTP_USERNAME:
        raise ValueError("SFTP_USERNAME is not configured")

    key_path = Path(settings.SFTP_KEY_PATH)
    if not key_path.exists():
        raise FileNotFoundError(f"SSH key file not found: {key_path}")

    try:
        private_key = paramiko.RSAKey.from_private_key_file(
            str(key_path),
            password=settings.SFTP_KEY_PASSPHRASE or None,
        )
    except paramiko.PasswordRequiredException as e:
        raise ValueError("SSH key requires passphrase but SFTP_KEY_PASSPHRASE not set") from e
    except paramiko.SSHException as e:
        raise paramiko.SSHException(f"Failed to load SSH key: {e}") from e

    ssh_client = SSHClient()
    # Destination hosts are provisioned per environment without a known_hosts file
    ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

    try:
        ssh_client.connect(
            hostname=settings.SFTP_HOST,
            port=settings.SFTP_PORT,
            username=settings.SFTP_USERNAME,
            pkey=private_key,
            timeout=settings.SFTP_TIMEOUT,
            auth_timeout=settings.SFTP_TIMEOUT,
        )
        return ssh_client, ssh_client.open_sftp()

    except Exception as e:
        ssh_client.close()
        raise IOError(f"Failed to establish SFTP connection: {e}") from e


class SftpObjectStore:
    """Uploader writing destination keys as files under a remote base directory."""

    def __init__(
        self,
        remote_base: Optional[str] = None,
        retries: Optional[int] = None,
        connect: ConnectionFactory = get_sftp_client,
        backoff: Callable[[int], float] = lambda attempt: 2 ** attempt,
    ) -> None:
        """
        Initialize object store.

        Args:
            remote_base: Remote root directory, defaults to settings.SFTP_REMOTE_BASE
            retries: Retry attempts per upload, defaults to settings.SFTP_UPLOAD_RETRIES
            connect: Factory returning a fresh (ssh_client, sftp_client) pair
            backoff: Seconds to wait before retry number `attempt` (0-based)
        """
        self.remote_base = (remote_base or settings.SFTP_REMOTE_BASE).rstrip("/")
        self.retries = settings.SFTP_UPLOAD_RETRIES if retries is None else retries
        self.connect = connect
        self.backoff = backoff

    def remote_path(self, destination_key: str) -> str:
        return f"{self.remote_base}/{destination_key.lstrip('/')}"

    async def put(self, destination_key: str, stream: IO[bytes], length: int) -> None:
        """
        Upload a stream to the remote file for a destination key.

        Raises:
            IOError: If the upload fails after all retries
        """
        await asyncio.to_thread(self.put_blocking, destination_key, stream, length)

    def put_blocking(self, destination_key: str, stream: IO[bytes], length: int) -> None:
        remote_path = self.remote_path(destination_key)
        remote_dir = posixpath.dirname(remote_path)
        start_position = stream.tell()
        last_error = None

        for attempt in range(self.retries + 1):
            ssh_client = None
            sftp_client = None

            try:
                ssh_client, sftp_client = self.connect()
                _ensure_remote_dir(sftp_client, remote_dir)

                stream.seek(start_position)
                sftp_client.putfo(stream, remote_path, file_size=length, confirm=False)

                remote_size = sftp_client.stat(remote_path).st_size
                if remote_size != length:
                    raise IOError(
                        f"Upload verification failed: size mismatch (local={length}, remote={remote_size})"
                    )

                logger.debug("Uploaded to SFTP: remote_path=%s, size=%d", remote_path, length)
                return

            except Exception as e:
                last_error = e

                if attempt < self.retries:
                    wait_time = self.backoff(attempt)
                    logger.warning(
                        "SFTP upload failed (attempt %d/%d), retrying in %ss: %s",
                        attempt + 1, self.retries + 1, wait_time, str(e)
                    )
                    time.sleep(wait_time)
                else:
                    logger.error(
                        "SFTP upload failed after %d attempts: remote_path=%s, error=%s",
                        self.retries + 1, remote_path, str(e)
                    )

            finally:
                _close_quietly(sftp_client, ssh_client)

        raise IOError(f"SFTP upload failed after {self.retries + 1} attempts: {last_error}") from last_error


def _close_quietly(*clients) -> None:
    for client in clients:
        if client is None:
            continue
        try:
            client.close()
        except Exception as e:
            logger.debug("Error closing SFTP connection: %s", e)


def _ensure_remote_dir(sftp_client: SFTPClient, remote_dir: str) -> None:
    """
    Ensure remote directory exists, creating it recursively if needed.

    Raises:
        IOError: If directory creation fails
    """
    if not remote_dir or remote_dir == "/":
        return

    remote_dir = remote_dir.rstrip("/")

    try:
        sftp_client.stat(remote_dir)
        return
    except FileNotFoundError:
        pass

    parent_dir = posixpath.dirname(remote_dir)
    if parent_dir and parent_dir != remote_dir:
        _ensure_remote_dir(sftp_client, parent_dir)

    try:
        sftp_client.mkdir(remote_dir)
        logger.debug("Created remote directory: %s", remote_dir)
    except IOError as e:
        # Another upload of the same job may have created it concurrently
        try:
            sftp_client.stat(remote_dir)
        except FileNotFoundError:
            raise IOError(f"Failed to create remote directory {remote_dir}: {e}") from e
