# generate_key.py
import argparse
import os
import secrets
import sys
sys.path.append(os.getcwd())

from eatsome.auth import issue_token
from eatsome.config import Settings


def new_secret() -> str:
    return secrets.token_urlsafe(48)


def main():
    parser = argparse.ArgumentParser(description="Create a JWT_SECRET or a bearer token for local testing.")
    parser.add_argument("--token", nargs=2, type=int, metavar=("USER_ID", "CHAT_ID"),
                        help="sign a bearer token with the configured JWT_SECRET instead")
    args = parser.parse_args()

    if args.token:
        settings = Settings.from_env()
        user_id, chat_id = args.token
        token = issue_token(user_id, chat_id, settings.jwt_secret, settings.jwt_ttl_hours)
        print(f"\n🎫 Bearer token for user {user_id} (valid {settings.jwt_ttl_hours}h):\n\n{token}\n")
        return

    print(f"\n🔑 JWT_SECRET={new_secret()}\n")


if __name__ == "__main__":
    main()
