from models.user import User
from models.subscription import Subscription

__all__ = ["User", "Subscription"]
