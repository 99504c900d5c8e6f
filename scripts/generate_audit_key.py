from __future__ import annotations

from privguard.core.crypto import AUDIT_KEY_ENV, generate_key_bytes, key_id_from_key_bytes


def main() -> None:
    key = generate_key_bytes()
    print(f"{AUDIT_KEY_ENV}={key.hex()}")
    print(f"Key fingerprint (key_id): {key_id_from_key_bytes(key)}")


if __name__ == "__main__":
    main()
