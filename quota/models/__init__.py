from .ai_assistant_usage import AIAssistantUsage
from .ai_assistant_log import AIAssistantLog
from .base import *
