"""
Generate the secrets a fresh deployment needs.

Prints a Fernet key for destination encryption and random webhook
secrets, ready to paste into .env.
Run once during project setup: python scripts/generate_keys.py
"""

import secrets

from cryptography.fernet import Fernet


def generate_keys() -> dict[str, str]:
    """Return new values for every locally generated secret."""
    return {
        "FERNET_KEY": Fernet.generate_key().decode(),
        "PRETIUM_WEBHOOK_SECRET": secrets.token_hex(32),
    }


if __name__ == "__main__":
    for name, value in generate_keys().items():
        print(f"{name}={value}")
    # PayCrest signs webhooks with the client secret it issues; nothing to generate.
