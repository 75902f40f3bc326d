"""
Credential Storage

Authenticated encryption of Solid token bundles before they are written to the
persistence layer.

Key Components:
- encryption.py: AES-256-GCM TokenCipher, key loading and key validation helpers

Envelopes are persisted as ``iv:authTag:salt:ciphertext`` hex fields. Any corruption of
the ciphertext or tag fails authentication, so partially decrypted data is never returned.
"""
