"""Write backend/.env from .env.example with fresh secrets.

Generates JWT_SECRET, TOKEN_ENCRYPTION_KEY (Fernet, encrypts device keys at
rest) and ADMIN_API_KEY. Existing .env files are never overwritten.
"""

import os
import secrets

from cryptography.fernet import Fernet

TEMPLATE_PATH = ".env.example"
ENV_PATH = ".env"


def main():
    generated = {
        "JWT_SECRET": secrets.token_urlsafe(32),
        "TOKEN_ENCRYPTION_KEY": Fernet.generate_key().decode(),
        "ADMIN_API_KEY": secrets.token_urlsafe(24),
    }

    if os.path.exists(ENV_PATH):
        print(f"{ENV_PATH} already exists; not touching it.")
        for name, value in generated.items():
            print(f"Generated {name}: {value}")
        return

    if not os.path.exists(TEMPLATE_PATH):
        print(f"Error: {TEMPLATE_PATH} not found. Run this from backend/.")
        return

    with open(TEMPLATE_PATH, "r") as f:
        lines = f.read().splitlines()

    out = []
    for line in lines:
        name = line.split("=", 1)[0]
        out.append(f"{name}={generated[name]}" if name in generated else line)

    with open(ENV_PATH, "w") as f:
        f.write("\n".join(out) + "\n")
    print(f"Successfully wrote {ENV_PATH}")


if __name__ == "__main__":
    main()
