"""
Tests for the OpenAI-compatible collaborator's error wrapping.

The aiohttp session is replaced by a fake; no network required.
"""

import asyncio
import unittest

import aiohttp

from errors import CollaboratorError
from llm_client import OpenAICompatibleCollaborator


class FakeResponse:
    def __init__(self, payload=None, body_error=None):
        self.payload = payload
        self.body_error = body_error

    def raise_for_status(self):
        return None

    async def json(self):
        if self.body_error:
            raise self.body_error
        return self.payload


class FakePost:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error

    async def __aenter__(self):
        if self.error:
            raise self.error
        return self.response

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    closed = False

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.urls = []

    def post(self, url, json=None, headers=None):
        self.urls.append(url)
        return FakePost(self.response, self.error)


class TestOpenAICompatibleCollaborator(unittest.IsolatedAsyncioTestCase):

    def collaborator(self, session):
        client = OpenAICompatibleCollaborator(
            api_key="key", base_url="http://llm.local/v1", model="llama3", timeout_seconds=5
        )
        client.session = session
        return client

    async def test_reply_text(self):
        session = FakeSession(FakeResponse({"choices": [{"message": {"content": " ## Summary "}}]}))
        text = await self.collaborator(session).summarize("context")
        self.assertEqual(text, "## Summary")
        self.assertEqual(session.urls, ["http://llm.local/v1/chat/completions"])

    # --- transport failures become CollaboratorError ---

    async def test_timeout_wrapped(self):
        client = self.collaborator(FakeSession(error=asyncio.TimeoutError()))
        with self.assertRaises(CollaboratorError) as ctx:
            await client.summarize("context")
        self.assertIn("timed out after 5s", ctx.exception.message)

    async def test_client_error_wrapped(self):
        client = self.collaborator(FakeSession(error=aiohttp.ClientConnectionError("refused")))
        with self.assertRaises(CollaboratorError):
            await client.propose("prompt")

    async def test_non_json_body_wrapped(self):
        session = FakeSession(FakeResponse(body_error=ValueError("Expecting value")))
        with self.assertRaises(CollaboratorError) as ctx:
            await self.collaborator(session).propose("prompt")
        self.assertIn("invalid JSON", ctx.exception.message)

    async def test_unexpected_payload(self):
        session = FakeSession(FakeResponse({"error": "overloaded"}))
        with self.assertRaises(CollaboratorError):
            await self.collaborator(session).propose("prompt")

    async def test_empty_reply(self):
        session = FakeSession(FakeResponse({"choices": [{"message": {"content": None}}]}))
        with self.assertRaises(CollaboratorError):
            await self.collaborator(session).propose("prompt")


if __name__ == "__main__":
    unittest.main()
