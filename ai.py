"""
Generative text oracle

The bookstore only needs "prompt in, text out". ``GeminiOracle`` provides that
through google-genai; anything with a ``complete(prompt) -> str`` method can
stand in for it.
"""
import logging
import os
from typing import Optional, Protocol

from errors import Unexpected

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-flash-lite-latest"


class TextOracle(Protocol):
    def complete(self, prompt: str) -> str:
        ...


class GeminiOracle:
    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        from google import genai
        self.client = genai.Client(api_key=api_key)
        self.model = model

    def complete(self, prompt: str) -> str:
        response = self.client.models.generate_content(model=self.model, contents=prompt)
        return response.text or ""


_oracle: Optional[TextOracle] = None


def get_oracle() -> TextOracle:
    global _oracle
    if _oracle is None:
        api_key = os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise Unexpected("Gemini API key is not configured. Set GEMINI_API_KEY in your environment.")
        _oracle = GeminiOracle(api_key, os.getenv("GEMINI_MODEL", DEFAULT_MODEL))
    return _oracle


def insight_prompt(title: str, author: str, genre: str, summary: str) -> str:
    return f"""You are an assistant for an online bookstore.
Given the following book information, craft:
1. A short, energetic marketing blurb (2 sentences max).
2. Two engaging discussion questions for a book club.
3. A suggested reader profile describing who would love this book.

Return each section on its own line prefixed with a label.

Title: {title}
Author: {author}
Genre: {genre}
Summary: {summary}"""


def generate_book_insights(oracle: TextOracle, title: str, author: str, genre: str, summary: str) -> str:
    try:
        output = oracle.complete(insight_prompt(title, author, genre, summary))
    except Exception as e:
        logger.exception("Gemini request failed")
        raise Unexpected("Failed to generate AI insight", error=str(e)[:200])
    if not output or not output.strip():
        raise Unexpected("Failed to generate AI insight", error="Gemini returned an empty response.")
    return output.strip()
