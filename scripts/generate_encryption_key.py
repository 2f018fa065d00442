"""Generate a new ENCRYPTION_KEY for API key encryption (AES-256-GCM)."""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from workflow_engine.services.credential_vault import generate_encryption_key


if __name__ == "__main__":
    key = generate_encryption_key()
    print("Add this to your .env (or store it in Key Vault as the encryption key secret):\n")
    print(f"ENCRYPTION_KEY={key}")
    print("\nChanging this key makes credentials of in-flight batches undecryptable.")
