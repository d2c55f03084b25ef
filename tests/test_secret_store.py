"""
Unit tests for the secret store
"""

import pytest

from pipewright.errors import MissingSecret, ParseError
from pipewright.secret_store import MASK, SecretStore


class TestSecretStore:
    """Tests for SecretStore construction"""

    def test_from_env_uses_prefix(self):
        """Should only pick up prefixed variables"""
        store = SecretStore.from_env({"PIPEWRIGHT_SECRET_TOKEN": "abc", "HOME": "/root", "PIPEWRIGHT_SECRET_": "x"})
        assert dict(store) == {"TOKEN": "abc"}

    def test_from_yaml_file(self, tmp_path):
        """Should read a YAML mapping"""
        path = tmp_path / "secrets.yml"
        path.write_text("TOKEN: abc\nPORT: 5432\n")
        assert dict(SecretStore.from_file(path)) == {"TOKEN": "abc", "PORT": "5432"}

    def test_from_dotenv_file(self, tmp_path):
        """Should read KEY=VALUE lines, ignoring comments and quotes"""
        path = tmp_path / ".secrets"
        path.write_text("# registry\nUSER=bot\nTOKEN='a=b'\n\n")
        assert dict(SecretStore.from_file(path)) == {"USER": "bot", "TOKEN": "a=b"}

    def test_bad_dotenv_line(self, tmp_path):
        """Should reject lines without '='"""
        path = tmp_path / ".secrets"
        path.write_text("TOKEN\n")
        with pytest.raises(ParseError):
            SecretStore.from_file(path)

    def test_missing_file(self, tmp_path):
        """Should raise FileNotFoundError"""
        with pytest.raises(FileNotFoundError):
            SecretStore.from_file(tmp_path / "nope.yml")

    def test_repr_hides_values(self):
        """Should never show secret values in its repr"""
        store = SecretStore({"TOKEN": "hunter2"})
        assert "hunter2" not in repr(store)
        assert "TOKEN" in repr(store)

    def test_merged_prefers_other(self):
        """Should let the merged mapping override existing names"""
        store = SecretStore({"A": "1", "B": "2"}).merged({"B": "3"})
        assert dict(store) == {"A": "1", "B": "3"}


class TestSubstitution:
    """Tests for resolve / redact"""

    def test_resolve_nested(self):
        """Should substitute references inside strings, dicts and lists"""
        store = SecretStore({"TOKEN": "abc"})
        value = {"auth": "Bearer ${{ secrets.TOKEN }}", "args": ["${{secrets.TOKEN}}", 3]}
        assert store.resolve(value) == {"auth": "Bearer abc", "args": ["abc", 3]}

    def test_resolve_missing(self):
        """Should raise MissingSecret naming the secret"""
        with pytest.raises(MissingSecret) as exc:
            SecretStore().resolve("${{ secrets.NOPE }}")
        assert exc.value.name == "NOPE"

    def test_references(self):
        """Should list referenced names without resolving them"""
        assert SecretStore().references({"a": "${{ secrets.X }}", "b": ["${{ secrets.Y }}"]}) == {"X", "Y"}

    def test_redact(self):
        """Should mask every known value, longest first"""
        store = SecretStore({"SHORT": "abc", "LONG": "abcdef"})
        assert store.redact("token=abcdef and abc") == f"token={MASK} and {MASK}"
        assert store.redact({"k": ["abc"]}) == {"k": [MASK]}

    def test_redact_ignores_empty_values(self):
        """Should not mask the empty string"""
        assert SecretStore({"EMPTY": ""}).redact("text") == "text"
