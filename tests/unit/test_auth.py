"""
Unit tests for mdp_server.auth.

Tests token comparison and the bearer-token dependency in isolation.
"""

import asyncio

import pytest
from fastapi import HTTPException
from fastapi.security import HTTPAuthorizationCredentials

from mdp_server.auth import create_require_token_dependency, token_matches


def bearer(token):
    return HTTPAuthorizationCredentials(scheme="Bearer", credentials=token)


class TestTokenMatches:
    """Test suite for token comparison."""

    def test_equal_tokens_match(self):
        assert token_matches("s3cret", "s3cret")

    def test_different_tokens_do_not_match(self):
        assert not token_matches("s3cret", "s3cre")
        assert not token_matches("s3cret", "S3CRET")

    def test_missing_token_does_not_match(self):
        assert not token_matches("s3cret", None)


class TestRequireToken:
    """Test suite for the require-token dependency."""

    def test_no_configured_token_allows_all(self):
        require_token = create_require_token_dependency(lambda: None)

        assert asyncio.run(require_token(credentials=None, api_token=None)) is None
        assert asyncio.run(require_token(credentials=None, api_token="")) is None

    def test_valid_token_accepted(self):
        require_token = create_require_token_dependency(lambda: "s3cret")

        result = asyncio.run(
            require_token(credentials=bearer("s3cret"), api_token="s3cret")
        )
        assert result is None

    @pytest.mark.parametrize("credentials", [None, bearer("wrong")])
    def test_missing_or_wrong_token_rejected(self, credentials):
        require_token = create_require_token_dependency(lambda: "s3cret")

        with pytest.raises(HTTPException) as exc_info:
            asyncio.run(require_token(credentials=credentials, api_token="s3cret"))

        assert exc_info.value.status_code == 401
        assert exc_info.value.headers == {"WWW-Authenticate": "Bearer"}
