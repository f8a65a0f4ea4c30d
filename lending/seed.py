"""Sample data for development databases."""

import logging
from typing import Dict

from .database import clear_data
from .services import Services

logger = logging.getLogger(__name__)

USERS = [
    ("librarian@library.com", "LibPass123!", "Library", "Administrator", "librarian"),
    ("member@library.com", "MemPass123!", "John", "Doe", "member"),
    ("jane.smith@library.com", "JanePass123!", "Jane", "Smith", "member"),
    ("alex.johnson@library.com", "AlexPass123!", "Alex", "Johnson", "member"),
]

CATEGORIES = [
    ("Web Development", "Books about web technologies, frameworks, and development practices"),
    ("Programming Languages", "Books covering various programming languages and their concepts"),
    ("Software Engineering", "Books about software design, architecture, and engineering practices"),
    ("Data Science", "Books about data analysis, machine learning, and statistical methods"),
    ("Computer Science", "Fundamental computer science concepts and algorithms"),
]

BOOKS = [
    {
        "isbn": "9780132350884", "title": "Clean Code", "author": "Robert C. Martin",
        "publisher": "Prentice Hall", "publication_year": 2008, "total_copies": 3,
        "categories": ["Software Engineering"],
    },
    {
        "isbn": "9780135957059", "title": "The Pragmatic Programmer", "author": "David Thomas, Andrew Hunt",
        "publisher": "Addison-Wesley", "publication_year": 2019, "total_copies": 2,
        "categories": ["Software Engineering"],
    },
    {
        "isbn": "9780201633610", "title": "Design Patterns", "author": "Erich Gamma",
        "publisher": "Addison-Wesley", "publication_year": 1994, "total_copies": 2,
        "categories": ["Software Engineering", "Computer Science"],
    },
    {
        "isbn": "9780134757599", "title": "Refactoring", "author": "Martin Fowler",
        "publisher": "Addison-Wesley", "publication_year": 2018, "total_copies": 2,
        "categories": ["Software Engineering"],
    },
    {
        "isbn": "9781593279509", "title": "Eloquent JavaScript", "author": "Marijn Haverbeke",
        "publisher": "No Starch Press", "publication_year": 2018, "total_copies": 4,
        "categories": ["Web Development", "Programming Languages"],
    },
    {
        "isbn": "9781491946008", "title": "Fluent Python", "author": "Luciano Ramalho",
        "publisher": "O'Reilly Media", "publication_year": 2015, "total_copies": 3,
        "categories": ["Programming Languages"],
    },
    {
        "isbn": "9781491957660", "title": "Python for Data Analysis", "author": "Wes McKinney",
        "publisher": "O'Reilly Media", "publication_year": 2017, "total_copies": 2,
        "categories": ["Data Science", "Programming Languages"],
    },
    {
        "isbn": "9780262033848", "title": "Introduction to Algorithms", "author": "Thomas H. Cormen",
        "publisher": "MIT Press", "publication_year": 2009, "total_copies": 1,
        "categories": ["Computer Science"],
    },
]


def has_data(services: Services) -> bool:
    with services.pool.connection() as conn:
        return conn.execute("SELECT EXISTS (SELECT 1 FROM users) OR EXISTS (SELECT 1 FROM books)").fetchone()[0] == 1


def seed_database(services: Services, reset: bool = False) -> Dict[str, int]:
    """Insert the sample users, categories and books. Returns how many of each were created.

    An already populated database is left alone unless ``reset`` is set.
    """
    if reset:
        clear_data(services.pool)
    elif has_data(services):
        logger.info("Database already contains data; skipping seed")
        return {"users": 0, "categories": 0, "books": 0}

    for email, password, first_name, last_name, role in USERS:
        services.auth.create_user(email, password, first_name, last_name, role=role)

    category_ids = {}
    for name, description in CATEGORIES:
        category_ids[name] = services.categories.create_category(name, description).id

    for entry in BOOKS:
        data = {k: v for k, v in entry.items() if k != "categories"}
        services.books.create_book(data, [category_ids[name] for name in entry["categories"]])

    logger.info(f"Seeded {len(USERS)} users, {len(CATEGORIES)} categories, {len(BOOKS)} books")
    return {"users": len(USERS), "categories": len(CATEGORIES), "books": len(BOOKS)}
