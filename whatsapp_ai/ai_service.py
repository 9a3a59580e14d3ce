import logging
from typing import Optional

from openai import AsyncOpenAI

from whatsapp_ai.config import Settings

logger = logging.getLogger(__name__)

APOLOGY_MESSAGE = (
    "I apologize, but I encountered an error processing your message. Please try again."
)

SYSTEM_PROMPT = """You are a helpful AI assistant accessible via WhatsApp. You should:
- Be friendly and conversational
- Keep responses concise but informative (max 80 words)
- If you don't know something, admit it rather than making things up"""


class AIService:
    """Reply generation. Never raises: failures degrade to APOLOGY_MESSAGE."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 500,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    @classmethod
    def from_settings(cls, settings: Settings) -> "AIService":
        client = None
        if settings.OPENAI_API_KEY:
            client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.OPENAI_TIMEOUT_SECONDS,
            )
        return cls(client=client, model=settings.OPENAI_MODEL)

    def build_messages(self, user_message: str, conversation_history: str = "") -> list[dict]:
        system = SYSTEM_PROMPT
        if conversation_history:
            system += f"\n\nPrevious conversation context:\n{conversation_history}"
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user_message},
        ]

    async def generate_response(self, user_message: str, conversation_history: str = "") -> str:
        if self.client is None:
            logger.error("OpenAI API key not configured")
            return APOLOGY_MESSAGE

        try:
            completion = await self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(user_message, conversation_history),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            reply = (completion.choices[0].message.content or "").strip()
        except Exception as e:
            logger.exception(f"Error generating AI response: {e}")
            return APOLOGY_MESSAGE

        if not reply:
            logger.warning("Empty AI response")
            return APOLOGY_MESSAGE
        return reply
