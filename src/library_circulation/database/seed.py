"""
Sample data for development databases.

Generates a catalog of books with valid ISBN-13s and a population of users
with subscriptions, so the circulation tools have something to lend. All
books start fully available: circulation state is only ever created through
the engine.
"""

import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta

from faker import Faker
from sqlalchemy.orm import Session

from .schema import Book, Subscription
from .session import safe_commit

logger = logging.getLogger(__name__)

PLANS = [
    # (name, max_books_allowed, max_days_per_book, weight)
    ("basic", 2, 14, 50),
    ("standard", 5, 21, 35),
    ("premium", 10, 30, 15),
]


@dataclass
class SeedSummary:
    books: int
    users: int
    subscriptions: int


def generate_isbn13(rng: random.Random) -> str:
    """Generate a valid ISBN-13 number."""
    body = "978" + "".join(str(rng.randint(0, 9)) for _ in range(9))
    total = sum(int(digit) * (3 if i % 2 else 1) for i, digit in enumerate(body))
    return body + str((10 - (total % 10)) % 10)


def generate_books(fake: Faker, rng: random.Random, num_books: int) -> list[Book]:
    books = []
    seen: set[str] = set()
    while len(books) < num_books:
        isbn = generate_isbn13(rng)
        if isbn in seen:
            continue
        seen.add(isbn)
        total_copies = rng.randint(1, 5)
        books.append(
            Book(
                id=f"book_{isbn}",
                isbn=isbn,
                title=fake.catch_phrase().title(),
                total_copies=total_copies,
                available_copies=total_copies,
                active=rng.random() > 0.05,
            )
        )
    return books


def generate_subscriptions(
    fake: Faker, rng: random.Random, num_users: int, today: date
) -> list[Subscription]:
    """One subscription per user; roughly one in ten has lapsed."""
    subscriptions = []
    weights = [plan[3] for plan in PLANS]
    for n in range(1, num_users + 1):
        name, max_books, max_days, _ = rng.choices(PLANS, weights=weights)[0]
        start = fake.date_between(start_date="-2y", end_date="-30d")
        lapsed = rng.random() < 0.1
        subscriptions.append(
            Subscription(
                id=f"subscription_{n:04d}",
                user_id=f"user_{1000 + n}",
                plan_name=name,
                max_books_allowed=max_books,
                max_days_per_book=max_days,
                active=not lapsed,
                start_date=start,
                end_date=today - timedelta(days=1) if lapsed else None,
            )
        )
    return subscriptions


def seed_database(
    session: Session, num_books: int = 200, num_users: int = 50, seed: int = 42
) -> SeedSummary:
    """Insert sample books and subscriptions; the same seed yields the same data."""
    fake = Faker()
    Faker.seed(seed)
    rng = random.Random(seed)

    books = generate_books(fake, rng, num_books)
    session.add_all(books)
    subscriptions = generate_subscriptions(fake, rng, num_users, date.today())
    session.add_all(subscriptions)
    safe_commit(session, "seed_database")

    logger.info("Seeded %d books and %d subscriptions", len(books), len(subscriptions))
    return SeedSummary(
        books=len(books),
        users=len({s.user_id for s in subscriptions}),
        subscriptions=len(subscriptions),
    )
