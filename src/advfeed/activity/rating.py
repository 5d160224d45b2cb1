"""Host rating aggregation.

The author record keeps only ``averageRating`` and ``totalRatings``. Each new
rating recomputes the mean from those two values:

    new_average = (old_average * old_count + rating) / (old_count + 1)

in float64. No running sum is stored, so rounding error accumulates slowly
over many ratings; this is a known approximation, not something to patch
with a separate sum field.
"""

from __future__ import annotations

from advfeed.errors import InvalidRatingError
from advfeed.models import User


def validate_rating(rating: object, min_rating: int = 1, max_rating: int = 5) -> int:
    """Return ``rating`` if it is an integer within bounds, else raise InvalidRatingError."""
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidRatingError(f"Rating must be an integer, got {rating!r}")
    if not min_rating <= rating <= max_rating:
        raise InvalidRatingError(f"Rating must be between {min_rating} and {max_rating}, got {rating}")
    return rating


def apply_rating(
    author: User,
    rating: int,
    min_rating: int = 1,
    max_rating: int = 5,
) -> tuple[float, int]:
    """Fold ``rating`` into the author's aggregate. Returns (new_average, new_count)."""
    rating = validate_rating(rating, min_rating, max_rating)
    old_count = author.total_ratings
    old_average = author.average_rating if old_count and author.average_rating is not None else 0.0
    new_count = old_count + 1
    new_average = (old_average * old_count + rating) / new_count
    return float(new_average), new_count
