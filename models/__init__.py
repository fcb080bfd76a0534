from .conversation import ChatSession, ChatMessage
from .risk_profile import UserRiskProfile
from .user_subscription import UserSubscription
