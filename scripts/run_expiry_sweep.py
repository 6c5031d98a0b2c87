from __future__ import annotations

import argparse
import logging

from app.workers.expiry_worker import process_once, run_forever


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire overdue payments and transactions.")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--loop", action="store_true", help="keep sweeping every --poll-seconds")
    parser.add_argument("--poll-seconds", type=int, default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if args.loop:
        run_forever(poll_seconds=args.poll_seconds, batch_size=args.batch_size)
        return

    stats = process_once(batch_size=args.batch_size)
    print(
        "counts:",
        f"checked={stats['checked']}",
        f"payments_expired={stats['payments_expired']}",
        f"transactions_expired={stats['transactions_expired']}",
        f"errors={stats['errors']}",
    )


if __name__ == "__main__":
    main()
