# Utils package initialization file
from utils.message_sanitizer import sanitize_message

__all__ = ['sanitize_message']
