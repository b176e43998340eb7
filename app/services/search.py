from sqlalchemy import or_
from sqlalchemy.orm import Query


def phrase_then_words(query: Query, column, phrase: str, order_by, limit: int = 10) -> list:
    """Rows whose column contains the whole phrase; failing that, any of its words."""
    phrase = phrase.strip()
    if not phrase:
        return []

    matches = query.filter(column.ilike(f"%{phrase}%")).order_by(order_by).limit(limit).all()
    if matches:
        return matches

    words = [word for word in phrase.split() if word]
    if len(words) < 2:
        return []
    return (
        query.filter(or_(*[column.ilike(f"%{word}%") for word in words]))
        .order_by(order_by)
        .limit(limit)
        .all()
    )
