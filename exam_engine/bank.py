"""
Loading and encryption of exam bank files.

A bank file holds the roster, coding questions, MCQ questions and class
sections. It is either plain JSON (.json) or Fernet-encrypted. Encrypted
banks use a key file, or a password when the data starts with the b'SALT'
prefix followed by a 16-byte salt. A bank may be bundled with its exam
config as {"config": {...}, "bank": {...}}.
"""

import base64
import hashlib
import json
import os
from pathlib import Path
from typing import Optional, Tuple

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import Bank, ExamConfig

SALT_PREFIX = b'SALT'
SALT_LENGTH = 16


def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,  # OWASP recommendation for 2024
    )
    key_material = kdf.derive(password.encode('utf-8'))
    return base64.urlsafe_b64encode(key_material)


def generate_key() -> bytes:
    return Fernet.generate_key()


def is_password_protected(data: bytes) -> bool:
    return data.startswith(SALT_PREFIX)


def encrypt_bank(plaintext: bytes, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Encrypt bank JSON with a Fernet key or a password.

    Raises:
        ValueError: If the plaintext is not JSON, or neither/both secrets are given
    """
    if (key is None) == (password is None):
        raise ValueError("Specify exactly one of key or password")

    json.loads(plaintext)

    if password is not None:
        salt = os.urandom(SALT_LENGTH)
        token = Fernet(derive_key_from_password(password, salt)).encrypt(plaintext)
        return SALT_PREFIX + salt + token
    return Fernet(key).encrypt(plaintext)


def decrypt_bank(data: bytes, key_input: str) -> bytes:
    """
    Decrypt bank data. key_input is a password for salted data, else a Fernet key.

    Raises:
        ValueError: If the key/password is wrong or the data is corrupted
    """
    if is_password_protected(data):
        salt = data[len(SALT_PREFIX):len(SALT_PREFIX) + SALT_LENGTH]
        token = data[len(SALT_PREFIX) + SALT_LENGTH:]
        key = derive_key_from_password(key_input, salt)
    else:
        token = data
        key = key_input.strip().encode('utf-8')

    try:
        return Fernet(key).decrypt(token)
    except (InvalidToken, ValueError) as e:
        raise ValueError("Decryption failed: invalid key/password or corrupted file") from e


def parse_bank(payload: dict) -> Tuple[Bank, Optional[ExamConfig]]:
    """Build a Bank (and bundled config, if any) from decoded JSON."""
    config = None
    if "config" in payload and "bank" in payload:
        config = ExamConfig.from_dict(payload["config"])
        is_valid, err = config.validate()
        if not is_valid:
            raise ValueError(f"Invalid bundled config: {err}")
        payload = payload["bank"]

    try:
        return Bank.from_dict(payload), config
    except KeyError as e:
        raise ValueError(f"Bank is missing required field {e}") from e


def load_bank(bank_path: Path, key_input: Optional[str] = None) -> Tuple[Bank, Optional[ExamConfig]]:
    """
    Load a bank file, decrypting it unless it is plain .json.

    Args:
        bank_path: Path to the .json or encrypted bank
        key_input: Fernet key or password (ignored for .json files)

    Returns:
        Tuple of (bank, bundled config or None)

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If decryption or validation fails
    """
    bank_path = Path(bank_path)
    raw = bank_path.read_bytes()

    if bank_path.suffix.lower() != '.json':
        if not key_input:
            raise ValueError(f"Bank '{bank_path.name}' is encrypted; a key or password is required")
        raw = decrypt_bank(raw, key_input)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in bank file: {e}") from e

    return parse_bank(payload)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
