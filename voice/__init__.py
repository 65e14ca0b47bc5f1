"""
Voice Subsystem — speech-to-text for inbound voice notes and
text-to-speech for spoken replies.
"""
from voice.speech import SpeechService, GoogleSpeechService

__all__ = ["SpeechService", "GoogleSpeechService"]
