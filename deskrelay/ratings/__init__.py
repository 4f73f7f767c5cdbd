from .listener import RATINGS_TOPIC, RatingCallbacks, RatingListener
from .manager import RatingManager
from .models import MAX_RATING, MIN_RATING, Rating

__all__ = [
    "MAX_RATING",
    "MIN_RATING",
    "RATINGS_TOPIC",
    "Rating",
    "RatingCallbacks",
    "RatingListener",
    "RatingManager",
]
