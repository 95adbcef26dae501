import argparse

from sqlalchemy import select

from queuematic import clock
from queuematic.db import SessionLocal, create_tables
from queuematic.models import Branch, Counter, Principal, PrincipalRole
from queuematic.security.passwords import hash_password


def seed(counter_count: int = 3) -> None:
    with SessionLocal() as db:
        now = clock.now()
        branch = db.execute(select(Branch).where(Branch.name == 'Downtown')).scalar_one_or_none()
        if not branch:
            branch = Branch(name='Downtown', address='1 Main Street', active=True, created_at=now)
            db.add(branch)
            db.flush()

        existing_numbers = set(
            db.execute(select(Counter.number).where(Counter.branch_id == branch.id)).scalars().all()
        )
        for number in range(1, counter_count + 1):
            if number not in existing_numbers:
                db.add(Counter(branch_id=branch.id, number=number, active=True, created_at=now, updated_at=now))
        db.flush()

        admin = db.execute(select(Principal).where(Principal.username == 'admin')).scalar_one_or_none()
        if not admin:
            db.add(
                Principal(
                    username='admin',
                    password_hash=hash_password('adminpass'),
                    full_name='Branch Administrator',
                    role=PrincipalRole.ADMIN,
                    branch_id=None,
                    active=True,
                    created_at=now,
                    updated_at=now,
                )
            )

        for index in (1, 2):
            username = f'clerk{index}'
            clerk = db.execute(select(Principal).where(Principal.username == username)).scalar_one_or_none()
            if not clerk:
                db.add(
                    Principal(
                        username=username,
                        password_hash=hash_password('clerkpass'),
                        full_name=f'Clerk {index}',
                        role=PrincipalRole.CLERK,
                        branch_id=branch.id,
                        active=True,
                        created_at=now,
                        updated_at=now,
                    )
                )

        db.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description='Create tables and insert a demo branch, counters and staff.')
    parser.add_argument('--counters', type=int, default=3, help='Number of counters to ensure at the demo branch.')
    parser.add_argument('--skip-create-tables', action='store_true', help='Assume the schema already exists.')
    args = parser.parse_args()

    if not args.skip_create_tables:
        create_tables()
    seed(args.counters)
    print('Seed data inserted/verified.')


if __name__ == '__main__':
    main()
