"""Issue a bearer token for a service or test caller."""

import argparse
from datetime import timedelta

from clinic_scheduler.core.security import CALLER_ROLES, create_access_token


def main() -> None:
    """Print a signed access token for the given subject and role."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("subject", help="Caller id placed in the 'sub' claim")
    parser.add_argument("--role", choices=sorted(CALLER_ROLES), default="system")
    parser.add_argument(
        "--minutes",
        type=int,
        default=None,
        help="Lifetime in minutes (defaults to ACCESS_TOKEN_EXPIRE_MINUTES)",
    )
    args = parser.parse_args()

    expires = timedelta(minutes=args.minutes) if args.minutes else None
    print(create_access_token({"sub": args.subject, "role": args.role}, expires_delta=expires))


if __name__ == "__main__":
    main()
