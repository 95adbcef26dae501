import argparse
import logging
from datetime import date, timedelta

from queuematic import clock
from queuematic.db import SessionLocal
from queuematic.security.sessions import purge_web_sessions
from queuematic.services.queue_engine import QueueEngine


def cancel_stale_tickets(before: date) -> int:
    engine = QueueEngine(SessionLocal)
    return engine.cancel_stale_waiting_tickets(before)


def purge_sessions(older_than_days: int) -> int:
    cutoff = clock.now() - timedelta(days=older_than_days)
    with SessionLocal() as db:
        purged = purge_web_sessions(db, before=cutoff)
        db.commit()
    return purged


def main() -> None:
    parser = argparse.ArgumentParser(description='Cancel tickets left waiting from previous business days.')
    parser.add_argument(
        '--keep-days',
        type=int,
        default=0,
        help='Also keep waiting tickets from this many previous business days.',
    )
    parser.add_argument('--before', type=date.fromisoformat, help='Explicit cutoff date (YYYY-MM-DD), exclusive.')
    parser.add_argument(
        '--purge-sessions-days',
        type=int,
        default=None,
        help='Also delete login sessions that ended more than this many days ago.',
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    cutoff = args.before or clock.business_date() - timedelta(days=max(0, args.keep_days))
    cancelled = cancel_stale_tickets(cutoff)
    print(f'Stale ticket cleanup complete: cancelled={cancelled}, before={cutoff.isoformat()}')

    if args.purge_sessions_days is not None:
        purged = purge_sessions(max(0, args.purge_sessions_days))
        print(f'Login session purge complete: deleted={purged}')


if __name__ == '__main__':
    main()
