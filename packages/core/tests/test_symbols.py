"""Tests for regex identifier extraction."""

from prsteps_core.utils.symbols import RegexIdentifierExtractor


class TestIdentifiers:
    def test_first_seen_order_without_duplicates(self):
        ex = RegexIdentifierExtractor()
        assert ex.identifiers("token = refresh_token(token, user_id)") == ["token", "refresh_token", "user_id"]

    def test_keywords_and_short_names_dropped(self):
        ex = RegexIdentifierExtractor()
        names = ex.identifiers("if x is None: return self.value")
        assert "return" not in names
        assert "self" not in names
        assert "x" not in names
        assert "value" in names

    def test_dunder_names_dropped(self):
        assert RegexIdentifierExtractor().identifiers("def __init__(self): pass") == []

    def test_min_length_configurable(self):
        assert "db" in RegexIdentifierExtractor(min_length=2).identifiers("db.commit()")


class TestDefinitions:
    def test_python(self):
        text = "import os\n\nclass Session:\n    async def refresh(self):\n        pass\n"
        assert RegexIdentifierExtractor().definitions(text) == [("Session", 3), ("refresh", 4)]

    def test_javascript(self):
        text = "export function login(user) {}\nexport const logout = () => {}\n"
        assert RegexIdentifierExtractor().definitions(text) == [("login", 1), ("logout", 2)]

    def test_go_method_and_rust_fn(self):
        ex = RegexIdentifierExtractor()
        assert ex.definitions("func (s *Server) Handle(w http.ResponseWriter) {") == [("Handle", 1)]
        assert ex.definitions("pub fn parse_token(raw: &str) -> Token {") == [("parse_token", 1)]

    def test_module_constant(self):
        assert RegexIdentifierExtractor().definitions("MAX_RETRIES = 5\n") == [("MAX_RETRIES", 1)]

    def test_comparison_is_not_definition(self):
        assert RegexIdentifierExtractor().definitions("MAX_RETRIES == 5\n") == []


class TestImports:
    def test_python_imports(self):
        text = "import os.path, json\nfrom app.auth import login\n"
        assert RegexIdentifierExtractor().imports(text) == ["path", "json", "auth"]

    def test_js_imports(self):
        text = "import { login } from './lib/auth.js'\nconst db = require('../db')\n"
        assert RegexIdentifierExtractor().imports(text) == ["auth", "db"]
