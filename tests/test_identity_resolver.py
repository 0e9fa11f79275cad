"""
Tests for IdentityResolver.
"""

from unittest.mock import Mock, patch

import pytest

from social.graze.handles.errors import MissingInputError, ResolutionError
from social.graze.handles.resolve.identity import IdentityResolver

DOCUMENT = {
    "id": "did:plc:AAA",
    "alsoKnownAs": ["at://alice.bsky.social"],
    "service": [
        {
            "type": "AtprotoPersonalDataServer",
            "serviceEndpoint": "https://pds.example.com",
        }
    ],
}


@pytest.fixture
def resolver():
    return IdentityResolver(Mock(), "plc.directory")


class TestResolve:
    @patch("social.graze.handles.resolve.identity.resolve_handle")
    async def test_handle(self, mock_resolve_handle, resolver):
        mock_resolve_handle.return_value = "did:plc:AAA"

        assert await resolver.resolve("@Alice.bsky.social") == "did:plc:AAA"
        assert mock_resolve_handle.await_args.args[1] == "alice.bsky.social"

    @patch("social.graze.handles.resolve.identity.resolve_handle")
    async def test_handle_without_did(self, mock_resolve_handle, resolver):
        mock_resolve_handle.return_value = None

        with pytest.raises(ResolutionError, match="error-resolve-1001"):
            await resolver.resolve("nobody.invalid")

    @patch("social.graze.handles.resolve.identity.resolve_did_document")
    async def test_did_with_document(self, mock_resolve_document, resolver):
        mock_resolve_document.return_value = DOCUMENT

        assert await resolver.resolve("did:plc:AAA") == "did:plc:AAA"
        mock_resolve_document.assert_awaited_once()
        assert mock_resolve_document.await_args.args[1:] == ("plc.directory", "did:plc:AAA")

    @patch("social.graze.handles.resolve.identity.resolve_did_document")
    async def test_did_without_document(self, mock_resolve_document, resolver):
        mock_resolve_document.return_value = None

        with pytest.raises(ResolutionError, match="error-resolve-1000"):
            await resolver.resolve("did:plc:ZZZ")

    @pytest.mark.parametrize("value", ["", "   ", "@"])
    async def test_empty(self, resolver, value):
        with pytest.raises(MissingInputError):
            await resolver.resolve(value)


class TestResolveSubject:
    @patch("social.graze.handles.resolve.identity.resolve_did_document")
    @patch("social.graze.handles.resolve.identity.resolve_handle")
    async def test_handle_to_subject(
        self, mock_resolve_handle, mock_resolve_document, resolver
    ):
        mock_resolve_handle.return_value = "did:plc:AAA"
        mock_resolve_document.return_value = DOCUMENT

        subject = await resolver.resolve_subject("alice.bsky.social")

        assert subject.did == "did:plc:AAA"
        assert subject.handle == "alice.bsky.social"
        assert subject.pds == "https://pds.example.com"

    @patch("social.graze.handles.resolve.identity.resolve_did_document")
    async def test_document_without_pds(self, mock_resolve_document, resolver):
        mock_resolve_document.return_value = {**DOCUMENT, "service": []}

        with pytest.raises(ResolutionError):
            await resolver.resolve_subject("did:plc:AAA")
