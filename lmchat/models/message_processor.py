"""Message processing utilities for converting conversation turns to model input format."""

import logging
from typing import List, Dict, Any, Optional, Sequence, Tuple
from PIL import Image

from lmchat.schemas.chat_models import Turn


logger = logging.getLogger(__name__)


class MessageProcessor:
    """Builds chat-template messages from instructions and conversation turns."""

    def __init__(self):
        """Initialize MessageProcessor."""
        # Fallback formatting templates (used when no chat template available)
        self.templates = {
            "system_prefix": "<|system|>\n",
            "user_prefix": "<|user|>\n",
            "assistant_prefix": "<|assistant|>\n",
            "conversation_separator": "\n",
        }

    def build_messages(
        self,
        turns: Sequence[Turn],
        instructions: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], List[Image.Image]]:
        """Convert turns into multi-modal chat messages.

        Args:
            turns: Conversation turns in chronological order
            instructions: Optional system instructions placed first

        Returns:
            Tuple of (messages, images); images appear in the same order
            as their ``{"type": "image"}`` placeholders
        """
        messages = []
        images = []

        if instructions:
            messages.append({
                "role": "system",
                "content": [{"type": "text", "text": instructions}]
            })

        for turn in turns:
            content = []
            if turn.image is not None:
                # Image placeholder precedes the text, as vision chat templates expect
                content.append({"type": "image"})
                images.append(turn.image)
            content.append({"type": "text", "text": turn.content})

            messages.append({
                "role": turn.role.value,
                "content": content
            })

        logger.debug(f"Built {len(messages)} messages with {len(images)} images")
        return messages, images

    def flatten_messages(self, messages: List[Dict[str, Any]]) -> List[Dict[str, str]]:
        """Reduce multi-modal messages to plain text content for text-only templates."""
        simple_messages = []
        for msg in messages:
            content = msg.get("content", "")
            if isinstance(content, list):
                text_parts = [
                    part.get("text", "")
                    for part in content
                    if isinstance(part, dict) and part.get("type") == "text"
                ]
                content = " ".join(text_parts)
            simple_messages.append({"role": msg.get("role", ""), "content": content})
        return simple_messages

    def format_fallback(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True
    ) -> str:
        """Format flattened messages when no chat template is available.

        Args:
            messages: List of message dictionaries with 'role' and 'content'
            add_generation_prompt: Whether to end with an assistant prefix

        Returns:
            Formatted chat string
        """
        formatted_parts = []

        for message in messages:
            role = message.get("role", "")
            content = message.get("content", "")

            if role == "system":
                formatted_parts.append(f"{self.templates['system_prefix']}{content}")
            elif role == "user":
                formatted_parts.append(f"{self.templates['user_prefix']}{content}")
            elif role == "assistant":
                formatted_parts.append(f"{self.templates['assistant_prefix']}{content}")

        result = self.templates["conversation_separator"].join(formatted_parts)

        if add_generation_prompt:
            result += f"{self.templates['conversation_separator']}{self.templates['assistant_prefix']}"

        return result

    @property
    def fallback_stop_markers(self) -> List[str]:
        """Role markers that end an assistant reply in the fallback format."""
        return [
            self.templates["user_prefix"].strip(),
            self.templates["system_prefix"].strip(),
        ]

    def set_templates(self, templates: Dict[str, str]) -> None:
        """Update formatting templates.

        Args:
            templates: Dictionary of template strings
        """
        self.templates.update(templates)
