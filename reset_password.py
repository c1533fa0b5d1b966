import os

from dotenv import load_dotenv

from db import get_database_url
from school_service import set_password


def main():
    load_dotenv()
    get_database_url()
    username = (os.getenv("RESET_USERNAME") or "").strip()
    raw_password = os.getenv("RESET_PASSWORD") or ""

    if not username:
        raise RuntimeError("RESET_USERNAME is required.")
    if len(raw_password) < 8:
        raise RuntimeError("RESET_PASSWORD is required (at least 8 characters).")

    updated = set_password(username, raw_password)

    if updated:
        print(f"Password reset successfully for {username}.")
    else:
        print(f"No user found for {username}.")
    return updated


if __name__ == "__main__":
    main()
