from typing import Dict

from lendings import BORROWED, REQUESTED

TOP_GENRES = 5


def sales_analytics(db) -> dict:
    """Dashboard totals for the admin console.

    total_sales sums every order's subtotal; active_borrows counts lendings that
    are still requested or borrowed; genres are ranked by purchases plus loans.
    """
    subtotals = [o.get("subtotal") or 0 for o in db["order"].find({}, {"subtotal": 1})]
    statuses = [l.get("status") for l in db["lending"].find({}, {"status": 1})]

    genres: Dict[str, Dict[str, int]] = {}
    for book in db["book"].find({}, {"genre": 1, "times_purchased": 1, "times_borrowed": 1}):
        stats = genres.setdefault(book.get("genre"), {"sales": 0, "borrows": 0})
        stats["sales"] += book.get("times_purchased") or 0
        stats["borrows"] += book.get("times_borrowed") or 0

    top_genres = sorted(
        ({"genre": genre, **stats} for genre, stats in genres.items()),
        key=lambda g: g["sales"] + g["borrows"],
        reverse=True,
    )[:TOP_GENRES]

    return {
        "total_sales": round(sum(subtotals), 2),
        "total_orders": len(subtotals),
        "total_borrows": len(statuses),
        "active_borrows": sum(1 for s in statuses if s in (REQUESTED, BORROWED)),
        "top_genres": top_genres,
    }
