from character_chat.moderation.classifier import ClassifierVerdict, ModerationClassifier, OpenAIModerationClassifier
from character_chat.moderation.gate import ModerationGate, ModerationResult

__all__ = [
    "ClassifierVerdict",
    "ModerationClassifier",
    "ModerationGate",
    "ModerationResult",
    "OpenAIModerationClassifier",
]
