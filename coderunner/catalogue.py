"""
Challenge catalogue loading.

A catalogue is a JSON document `{"challenges": [...]}` (a bare list is also
accepted), stored either as plain `.json` or Fernet-encrypted `.enc`.
Encrypted catalogues use a key file, or a password: password-based files
start with b'SALT' followed by a 16-byte salt and then the Fernet token.
"""

import base64
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .models import Challenge, HIDDEN_PLACEHOLDER, Language

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


def write_key_file(path: Union[str, Path], overwrite: bool = False) -> bytes:
    """Generate a Fernet key and store it at path. An existing key is kept unless overwrite."""
    path = Path(path)
    if path.exists() and not overwrite:
        raise FileExistsError(f"Key file '{path}' already exists")
    key = Fernet.generate_key()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(key)
    return key


def encrypt_catalogue(data: Any, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Serialize and encrypt a catalogue document.

    Exactly one of key or password must be given.
    """
    if (key is None) == (password is None):
        raise ValueError("Provide either a key or a password")
    payload = json.dumps(data, ensure_ascii=False).encode('utf-8')
    if password is not None:
        salt = os.urandom(SALT_LENGTH)
        return SALT_PREFIX + salt + Fernet(derive_key_from_password(password, salt)).encrypt(payload)
    return Fernet(key).encrypt(payload)


def decrypt_catalogue(blob: bytes, key: Optional[Union[str, bytes]] = None,
                      password: Optional[str] = None) -> Any:
    """Decrypt an `.enc` catalogue. Raises ValueError on a wrong key or password."""
    if blob.startswith(SALT_PREFIX):
        if password is None:
            raise ValueError("Catalogue is password-protected; a password is required")
        start = len(SALT_PREFIX)
        salt = blob[start:start + SALT_LENGTH]
        blob = blob[start + SALT_LENGTH:]
        fernet_key = derive_key_from_password(password, salt)
    else:
        if key is None:
            raise ValueError("Catalogue is key-encrypted; a key is required")
        fernet_key = key.encode('utf-8') if isinstance(key, str) else key

    try:
        return json.loads(Fernet(fernet_key.strip()).decrypt(blob))
    except InvalidToken:
        raise ValueError("Failed to decrypt the catalogue: wrong key or password")


def validate_challenge_dict(data: dict) -> List[str]:
    """
    Schema check of one challenge entry.

    Returns:
        List of error messages (empty if valid)
    """
    errors = []
    cid = data.get('id', '<missing id>')
    for required in ('id', 'title', 'test_cases'):
        if required not in data:
            errors.append(f"{cid}: missing field '{required}'")

    test_cases = data.get('test_cases') or []
    if not isinstance(test_cases, list):
        errors.append(f"{cid}: 'test_cases' must be a list")
        test_cases = []
    seen = set()
    for index, case in enumerate(test_cases, start=1):
        if 'id' not in case:
            errors.append(f"{cid}: test case {index} has no id")
        elif case['id'] in seen:
            errors.append(f"{cid}: duplicate test case id '{case['id']}'")
        else:
            seen.add(case['id'])
        if 'expected_output' not in case:
            errors.append(f"{cid}: test case {index} has no expected_output")

    for numeric in ('time_limit_ms', 'memory_limit_mb', 'xp_reward', 'coin_reward'):
        value = data.get(numeric)
        if value is not None and (not isinstance(value, int) or value < 0):
            errors.append(f"{cid}: '{numeric}' must be a non-negative integer")

    for mapping in ('code_templates', 'solutions'):
        for lang in (data.get(mapping) or {}):
            try:
                Language(lang)
            except ValueError:
                errors.append(f"{cid}: unknown language '{lang}' in {mapping}")
    return errors


def parse_catalogue(document: Any) -> List[Challenge]:
    entries = document.get('challenges', []) if isinstance(document, dict) else document
    if not isinstance(entries, list):
        raise ValueError("Catalogue must contain a list of challenges")

    errors = []
    for entry in entries:
        errors.extend(validate_challenge_dict(entry))
    if errors:
        raise ValueError("Invalid catalogue:\n  " + "\n  ".join(errors))
    return [Challenge.from_dict(entry) for entry in entries]


def load_catalogue(path: Union[str, Path], key: Optional[Union[str, bytes]] = None,
                   password: Optional[str] = None) -> List[Challenge]:
    """
    Load challenges from a `.json` or encrypted `.enc` catalogue file.

    Raises:
        FileNotFoundError: The file does not exist
        ValueError: Decryption failed or the content is not a valid catalogue
    """
    path = Path(path)
    if path.suffix.lower() == '.json':
        with open(path, 'r', encoding='utf-8') as f:
            try:
                document = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in catalogue: {e}")
    else:
        with open(path, 'rb') as f:
            document = decrypt_catalogue(f.read(), key=key, password=password)
    return parse_catalogue(document)


def public_challenge_view(challenge: Challenge, completed: bool = False) -> Dict[str, Any]:
    """
    Challenge as shown to a user.

    Hidden test cases keep their input out of the view and show a placeholder
    as expected output until the user has completed the challenge. Only the
    first hint is shown before completion. Reference solutions never appear.
    """
    test_cases = []
    for case in challenge.test_cases:
        if case.hidden and not completed:
            test_cases.append({
                "id": case.id,
                "hidden": True,
                "expected_output": HIDDEN_PLACEHOLDER,
            })
        else:
            test_cases.append({
                "id": case.id,
                "hidden": case.hidden,
                "input": case.input,
                "expected_output": case.expected_output,
                "explanation": case.explanation,
            })

    return {
        "id": challenge.id,
        "title": challenge.title,
        "description": challenge.description,
        "difficulty": challenge.difficulty,
        "category": challenge.category,
        "time_limit_ms": challenge.time_limit_ms,
        "memory_limit_mb": challenge.memory_limit_mb,
        "xp_reward": challenge.xp_reward,
        "coin_reward": challenge.coin_reward,
        "success_rate": challenge.success_rate,
        "hints": list(challenge.hints if completed else challenge.hints[:1]),
        "code_templates": {lang.value: code for lang, code in challenge.code_templates.items()},
        "test_cases": test_cases,
    }
