"""Encryption of recipient accounts at rest."""

import logging

from cryptography.fernet import Fernet, InvalidToken

from cosign.errors import InternalError

log = logging.getLogger("cosign.crypto")


class FieldCipher:
    """Fernet wrapper for single text columns."""

    def __init__(self, key: bytes | str) -> None:
        self.fernet = Fernet(key)

    @classmethod
    def generate(cls) -> "FieldCipher":
        return cls(Fernet.generate_key())

    def encrypt(self, value: str) -> str:
        return self.fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self.fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            log.error("Stored value could not be decrypted with the configured key")
            raise InternalError("Stored value could not be decrypted") from e
