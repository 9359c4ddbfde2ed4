import os
import base64
import logging
from typing import Optional
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)

KEY_FILE_LOCATIONS = [
    '/app/data/encryption_key.key',  # Docker volume
    'encryption_key.key'             # Current directory
]

class EncryptionManager:
    """Encrypts host SSH passwords at rest with Fernet."""

    def __init__(self, key: Optional[bytes] = None):
        self.secret_key = key or self._load_secret_key()
        self.cipher_suite = Fernet(self.secret_key)

    def _load_secret_key(self) -> bytes:
        """
        Key lookup order:
        1. ENCRYPTION_KEY environment variable
        2. Docker/Kubernetes secrets file (ENCRYPTION_KEY_FILE)
        3. A persisted key file
        4. A freshly generated key, persisted when possible
        """
        env_key = os.getenv('ENCRYPTION_KEY')
        if env_key:
            logger.info("✅ Using encryption key from ENCRYPTION_KEY environment variable")
            return self._validate_key(env_key)

        secret_file_path = os.getenv('ENCRYPTION_KEY_FILE', '/run/secrets/encryption_key')
        if os.path.exists(secret_file_path):
            with open(secret_file_path, 'r') as f:
                logger.info(f"✅ Using encryption key from secret file: {secret_file_path}")
                return self._validate_key(f.read())

        for key_file in KEY_FILE_LOCATIONS:
            if os.path.exists(key_file):
                with open(key_file, 'rb') as f:
                    logger.info(f"✅ Using existing encryption key from: {key_file}")
                    return self._validate_key(f.read().decode())

        logger.warning("⚠️  No existing encryption key found. Generating new key...")
        new_key = Fernet.generate_key()
        for key_file in KEY_FILE_LOCATIONS:
            try:
                directory = os.path.dirname(key_file)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(key_file, 'wb') as f:
                    f.write(new_key)
                os.chmod(key_file, 0o600)
                logger.info(f"✅ Generated and saved new encryption key to: {key_file}")
                return new_key
            except OSError as e:
                logger.warning(f"⚠️  Could not save key to {key_file}: {e}")

        logger.error("❌ Could not persist encryption key, stored host passwords will be unreadable after restart")
        return new_key

    def _validate_key(self, key_str: str) -> bytes:
        """Check that the key is 32 url-safe base64-encoded bytes"""
        key_str = key_str.strip().strip('"').strip("'")
        if not key_str:
            raise ValueError("Empty encryption key provided")

        try:
            key_bytes = base64.urlsafe_b64decode(key_str)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key format: {e}")
        if len(key_bytes) != 32:
            raise ValueError(f"Key must decode to 32 bytes, got {len(key_bytes)}")

        return key_str.encode()

    def encrypt_data(self, data: str) -> str:
        """Encrypt data and return as base64 string"""
        if not data:
            return ""
        encrypted_data = self.cipher_suite.encrypt(data.encode())
        return base64.urlsafe_b64encode(encrypted_data).decode()

    def decrypt_data(self, encrypted_data: str) -> str:
        """Decrypt base64 encoded encrypted data"""
        if not encrypted_data:
            return ""
        try:
            encrypted_bytes = base64.urlsafe_b64decode(encrypted_data.encode())
            return self.cipher_suite.decrypt(encrypted_bytes).decode()
        except (InvalidToken, ValueError) as e:
            logger.error(f"❌ Decryption failed: {e}")
            raise ValueError(f"Decryption failed - possible key mismatch: {e}")

# Global instance
encryption_manager = EncryptionManager()
