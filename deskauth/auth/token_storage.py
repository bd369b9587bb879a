"""
Token storage for DeskAuth.

This module provides the persisted side of the login: the current token pair
and the login state that owns it. SecureTokenStore keeps them in the system
keyring when available and falls back to an encrypted file otherwise.
"""

import os
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any

from cryptography.fernet import Fernet, InvalidToken

from deskauth_common.exceptions import TokenStorageError, ErrorCode
from deskauth_common.interfaces import ITokenStore
from deskauth_common.models import LoginState, TokenPair
from deskauth.auth.claims import parse_token_expiration

logger = logging.getLogger(__name__)

TOKENS_KEY = "tokens"
LOGIN_STATE_KEY = "login_state"


class MemoryTokenStore(ITokenStore):
    """
    In-process token store.

    Used when nothing should outlive the process, and in tests.
    ``write_count`` counts writes that actually changed the stored data.
    """

    def __init__(self, tokens: Optional[TokenPair] = None, login_state: Optional[LoginState] = None):
        self._tokens = tokens
        self._login_state = login_state
        self.write_count = 0

    async def get_tokens(self) -> Optional[TokenPair]:
        return self._tokens

    async def save_tokens(self, tokens: TokenPair) -> None:
        if tokens == self._tokens:
            logger.debug("save_tokens: tokens are already saved")
            return
        self._tokens = tokens
        self.write_count += 1

    async def get_login_state(self) -> Optional[LoginState]:
        return self._login_state

    async def save_login_state(self, login_state: LoginState) -> None:
        if login_state == self._login_state:
            return
        self._login_state = login_state
        self.write_count += 1

    async def clear_all(self) -> None:
        if self._tokens is None and self._login_state is None:
            return
        self._tokens = None
        self._login_state = None
        self.write_count += 1


class SecureTokenStore(ITokenStore):
    """
    Secure storage for the token pair and login state.

    Uses the system keyring when available, falls back to a Fernet-encrypted
    file. Records are JSON documents keyed by ``tokens`` and ``login_state``.
    """

    def __init__(
        self,
        service_name: str = "deskauth",
        storage_dir: Optional[str] = None,
        use_keyring: Optional[bool] = None
    ):
        self.service_name = service_name
        self.storage_dir = self._get_storage_dir(storage_dir)
        self.storage_path = self.storage_dir / 'auth_tokens.enc'
        self.key_path = self.storage_dir / 'auth_tokens.key'

        if use_keyring is None:
            self.keyring_available = self._check_keyring_availability()
        else:
            self.keyring_available = use_keyring

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Token storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_dir(self, custom_dir: Optional[str]) -> Path:
        """Get directory for encrypted file storage."""
        if custom_dir:
            config_dir = Path(custom_dir)
        else:
            xdg_config = os.environ.get('XDG_CONFIG_HOME')
            if xdg_config:
                config_dir = Path(xdg_config) / 'deskauth'
            else:
                config_dir = Path.home() / '.config' / 'deskauth'

        config_dir.mkdir(parents=True, exist_ok=True)
        return config_dir

    def _get_encryption_key(self) -> bytes:
        """
        Get or create the Fernet key for file storage.

        Only the file backend encrypts; with the keyring available records are
        stored in the keyring itself and no key is created.
        """
        if self._encryption_key:
            return self._encryption_key

        if self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        key = Fernet.generate_key()
        self.key_path.write_bytes(key)
        os.chmod(self.key_path, 0o600)

        self._encryption_key = key
        return key

    def _encrypt_data(self, data: str) -> bytes:
        return Fernet(self._get_encryption_key()).encrypt(data.encode())

    def _decrypt_data(self, encrypted_data: bytes) -> str:
        return Fernet(self._get_encryption_key()).decrypt(encrypted_data).decode()

    # Record level access

    def _read_record(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            if self.keyring_available:
                import keyring
                value = keyring.get_password(self.service_name, key)
                return json.loads(value) if value else None
            return self._read_file().get(key)
        except Exception as e:
            logger.error(f"Failed to read {key}: {e}")
            return None

    def _write_record(self, key: str, record: Optional[Dict[str, Any]]) -> None:
        try:
            if self.keyring_available:
                import keyring
                from keyring.errors import PasswordDeleteError
                if record is None:
                    try:
                        keyring.delete_password(self.service_name, key)
                    except PasswordDeleteError:
                        pass
                else:
                    keyring.set_password(self.service_name, key, json.dumps(record))
                return

            records = self._read_file()
            if record is None:
                records.pop(key, None)
            else:
                records[key] = record
            self._write_file(records)
        except Exception as e:
            logger.error(f"Failed to write {key}: {e}")
            raise TokenStorageError(f"Failed to write {key}: {e}", cause=e)

    def _read_file(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}
        try:
            return json.loads(self._decrypt_data(self.storage_path.read_bytes()))
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Failed to read token file: {e}")
            return {}

    def _write_file(self, records: Dict[str, Any]) -> None:
        if not records:
            self.storage_path.unlink(missing_ok=True)
            return
        self.storage_path.write_bytes(self._encrypt_data(json.dumps(records)))
        os.chmod(self.storage_path, 0o600)

    # ITokenStore

    async def get_tokens(self) -> Optional[TokenPair]:
        record = self._read_record(TOKENS_KEY)
        if not record:
            return None
        return TokenPair.from_dict(record)

    async def save_tokens(self, tokens: TokenPair) -> None:
        """
        Store the token pair.

        Writing the pair that is already stored is a no-op.
        """
        current = await self.get_tokens()
        if current == tokens:
            logger.debug("save_tokens: tokens are already saved")
            return

        exp = parse_token_expiration(tokens.access_token)
        record = tokens.to_dict()
        record['updated_at'] = datetime.now().isoformat()
        record['expires_at'] = datetime.fromtimestamp(exp).isoformat() if exp else None

        self._write_record(TOKENS_KEY, record)
        logger.info(f"Tokens stored securely for session {tokens.session_id}")

    async def get_login_state(self) -> Optional[LoginState]:
        record = self._read_record(LOGIN_STATE_KEY)
        if not record or not record.get('state'):
            return None
        return LoginState(state=record['state'], device_id=record.get('device_id'))

    async def save_login_state(self, login_state: LoginState) -> None:
        if await self.get_login_state() == login_state:
            return
        self._write_record(LOGIN_STATE_KEY, {
            'state': login_state.state,
            'device_id': login_state.device_id,
        })

    async def clear_all(self) -> None:
        self._write_record(TOKENS_KEY, None)
        self._write_record(LOGIN_STATE_KEY, None)
        logger.info("Cleared stored tokens and login state")

    def get_token_metadata(self) -> Optional[Dict[str, Any]]:
        """
        Return ``updated_at``/``expires_at`` of the stored pair, without the tokens.
        """
        record = self._read_record(TOKENS_KEY)
        if not record:
            return None
        return {
            'state': record.get('state'),
            'updated_at': record.get('updated_at'),
            'expires_at': record.get('expires_at'),
        }


def create_token_store(backend: str = "secure", **kwargs) -> ITokenStore:
    """
    Build a token store by backend name (``secure`` or ``memory``).
    """
    if backend == "memory":
        return MemoryTokenStore()
    if backend == "secure":
        return SecureTokenStore(**kwargs)
    raise TokenStorageError(f"Unknown token storage backend: {backend}", error_code=ErrorCode.CONFIG_INVALID_VALUE)
