"""Book model.

Only the fields the fine engine needs are read here; catalog management
lives elsewhere.
"""
import uuid
from typing import Any, Dict, Optional

from library_fines.models.database import get_db


class Book:
    def __init__(self, id, title, author='', category='standard', price=0.0):
        self.id = id
        self.title = title
        self.author = author
        self.category = (category or 'standard').lower()
        self.price = float(price) if price else 0.0

    @staticmethod
    def get_by_id(book_id) -> Optional['Book']:
        """Get book by ID"""
        db = get_db()
        row = db.execute('SELECT * FROM books WHERE id = ?', (book_id,)).fetchone()
        if row:
            return Book(**dict(row))
        return None

    @staticmethod
    def create(title, category='standard', author='', price=0.0) -> 'Book':
        db = get_db()
        book_id = str(uuid.uuid4())
        db.execute(
            'INSERT INTO books (id, title, author, category, price) VALUES (?, ?, ?, ?, ?)',
            (book_id, title, author, category.lower(), float(price))
        )
        db.commit()
        return Book.get_by_id(book_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'category': self.category,
            'price': self.price,
        }
