"""Post generation collaborator.

Turns a daily log into candidate social posts. Only the interface matters to
the entitlement subsystem: generation runs inside the Usage Ledger's metered
block, so a failed generation is never charged.
"""

import json
import logging
import re
from typing import List, Optional, Protocol

import groq


logger = logging.getLogger(__name__)

DEFAULT_PROMPT = """Here is today's work log:
{LOG_TEXT}

Generate short social posts based on what was built or learned today.
Keep them sharp and specific, no emojis, no motivational-thread tone.

Return the response as a JSON object: {{"tweets": ["first post", "second post"]}}"""


class TextGenerator(Protocol):
    def generate_posts(self, log_text: str) -> List[str]:
        ...


def strip_numbering_line(text: str) -> str:
    """Remove any leading numbering or bullets from a single line."""
    return re.sub(r"^\s*(?:\d+(?:/\d+)?[.):\-\]]*\s*|(?:Tweet\s+)?\d+\s*[-:).]?\s*|[-•*]+\s*)", "", text).lstrip()


def parse_posts(content: str) -> List[str]:
    """Read {"tweets": [...]} from model output, falling back to one post per line."""
    match = re.search(r"\{.*\}", content or "", re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
            tweets = data.get("tweets") if isinstance(data, dict) else None
            if isinstance(tweets, list):
                return [str(t).strip() for t in tweets if str(t).strip()]
        except ValueError:
            logger.debug("[ai] model output was not valid JSON, splitting lines")
    lines = [strip_numbering_line(line) for line in (content or "").splitlines()]
    return [line for line in lines if line]


class GroqPostGenerator:
    """Generates posts with the Groq chat completions API."""

    def __init__(self, api_key: Optional[str], model: str = "llama-3.1-8b-instant"):
        self.client = groq.Groq(api_key=api_key)
        self.model = model

    def generate_posts(self, log_text: str) -> List[str]:
        completion = self.client.chat.completions.create(
            messages=[
                {"role": "system", "content": "You write concise, first-person posts for X/Twitter."},
                {"role": "user", "content": DEFAULT_PROMPT.format(LOG_TEXT=log_text)},
            ],
            model=self.model,
            temperature=0.9,
            max_tokens=1024,
        )
        content = completion.choices[0].message.content or ""
        posts = parse_posts(content)
        logger.info("[ai] posts generated", extra={"count": len(posts)})
        return posts
