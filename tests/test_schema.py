"""Unit tests for the schema transformer."""

import json

import pytest

from pgshift.pipeline.errors import SchemaExtractionError
from pgshift.pipeline.schema import (
    CLEAN_SCHEMA,
    DUMP_ERRORS,
    RAW_SCHEMA,
    RLS_BACKUP,
    SchemaArtifact,
    SchemaTransformer,
    TargetCapabilities,
    check_extensions,
    clean_schema,
    declared_tables,
    mask_literals,
    split_statements,
)

from conftest import SAMPLE_SCHEMA, FakePgTools

ROLES = ["supabase_admin", "authenticated", "anon", "service_role"]
CAPABILITIES = TargetCapabilities(unavailable=frozenset({"pgsodium", "pg_graphql", "pg_net", "supautils"}))


def cleaned_sample() -> SchemaArtifact:
    artifact = SchemaArtifact(raw=SAMPLE_SCHEMA, blocked_extensions=frozenset({"pgsodium"}))
    return clean_schema(artifact, ROLES)


class TestStatementSplitting:
    """Tests for literal-aware statement splitting."""

    def test_chunks_reassemble_input(self):
        assert "".join(split_statements(SAMPLE_SCHEMA)) == SAMPLE_SCHEMA

    def test_semicolon_in_string_does_not_split(self):
        sql = "INSERT INTO t VALUES ('a;b');\nSELECT 1;\n"
        assert split_statements(sql) == ["INSERT INTO t VALUES ('a;b');\n", "SELECT 1;\n"]

    def test_dollar_body_is_one_statement(self):
        sql = "CREATE FUNCTION f() RETURNS int AS $body$ SELECT 1; SELECT 2; $body$ LANGUAGE sql;\n"
        assert len(split_statements(sql)) == 1

    def test_mask_keeps_length_and_lines(self):
        sql = "SELECT 'x\ny' -- comment\n;"
        masked = mask_literals(sql)
        assert len(masked) == len(sql)
        assert masked.count("\n") == sql.count("\n")
        assert "comment" not in masked

    def test_declared_tables_in_order(self):
        assert declared_tables(SAMPLE_SCHEMA) == ("customers", "orders")


class TestExtensionCheck:
    """Tests for extension classification."""

    def test_every_extension_lands_in_exactly_one_set(self):
        extensions = ["pgsodium", "uuid-ossp", "pg_net", "pgcrypto", "plpgsql"]
        compatible, blocked = check_extensions(extensions, CAPABILITIES)

        assert compatible == {"uuid-ossp", "pgcrypto"}
        assert blocked == {"pgsodium", "pg_net"}
        assert not compatible & blocked
        assert "plpgsql" not in compatible | blocked

    def test_allow_list_blocks_unlisted(self):
        capabilities = TargetCapabilities(available=frozenset({"pgcrypto"}))
        compatible, blocked = check_extensions(["pgcrypto", "postgis"], capabilities)
        assert compatible == {"pgcrypto"}
        assert blocked == {"postgis"}


class TestCleaning:
    """Tests for the statement-level filter."""

    def test_clean_is_idempotent(self):
        once = cleaned_sample()
        twice = clean_schema(once, ROLES)
        assert twice.cleaned == once.cleaned
        assert twice.removed == once.removed

    def test_blocked_extension_is_stripped(self):
        cleaned = cleaned_sample().cleaned
        assert "pgsodium" not in cleaned
        assert 'CREATE EXTENSION IF NOT EXISTS "uuid-ossp"' in cleaned

    def test_policies_and_rls_toggles_are_removed(self):
        artifact = cleaned_sample()
        assert "CREATE POLICY" not in artifact.cleaned
        assert "ROW LEVEL SECURITY" not in artifact.cleaned
        assert len(artifact.policies) == 2

    def test_role_grants_are_removed(self):
        artifact = cleaned_sample()
        assert "TO anon" not in artifact.cleaned
        assert "TO service_role" not in artifact.cleaned
        assert len(artifact.removed_of("role")) == 2

    def test_roles_inside_literals_and_bodies_are_kept(self):
        cleaned = cleaned_sample().cleaned
        assert "DEFAULT 'canonical; not for anon'" in cleaned
        assert "service_role never writes here" in cleaned
        assert "CREATE TABLE public.orders" in cleaned

    def test_role_matching_is_by_token(self):
        artifact = SchemaArtifact(raw="CREATE TABLE canonical_anonymous (id int);\n")
        assert clean_schema(artifact, ROLES).removed == ()

    def test_role_named_column_keeps_the_table(self):
        sql = "CREATE TABLE public.posts (\n    id bigint NOT NULL,\n    anon boolean DEFAULT false\n);\n"
        artifact = clean_schema(SchemaArtifact(raw=sql), ROLES)

        assert "CREATE TABLE public.posts" in artifact.cleaned
        assert artifact.removed == ()

    @pytest.mark.parametrize(
        "statement",
        [
            "ALTER TABLE public.orders OWNER TO supabase_admin;\n",
            "GRANT anon TO authenticator;\n",
            'REVOKE ALL ON TABLE public.orders FROM "service_role";\n',
            "CREATE SCHEMA billing AUTHORIZATION supabase_admin;\n",
            "ALTER DEFAULT PRIVILEGES FOR ROLE postgres IN SCHEMA public GRANT ALL ON TABLES TO anon;\n",
        ],
    )
    def test_roles_in_role_positions_are_removed(self, statement):
        artifact = clean_schema(SchemaArtifact(raw=statement), ROLES)
        assert artifact.cleaned == ""
        assert [r.kind for r in artifact.removed] == ["role"]

    def test_grants_to_other_roles_are_kept(self):
        sql = "GRANT SELECT (anon) ON TABLE public.posts TO reporting;\n"
        assert clean_schema(SchemaArtifact(raw=sql), ROLES).cleaned == sql

    def test_blocked_extension_schema_and_labels_are_stripped(self):
        sql = (
            "CREATE SCHEMA pgsodium;\n"
            "SECURITY LABEL FOR pgsodium ON COLUMN public.secrets.value IS 'ENCRYPT WITH KEY ID 1';\n"
            "CREATE SCHEMA billing;\n"
        )
        artifact = clean_schema(
            SchemaArtifact(raw=sql, blocked_extensions=frozenset({"pgsodium"})), ROLES
        )

        assert artifact.cleaned == "CREATE SCHEMA billing;\n"
        assert [r.kind for r in artifact.removed] == ["extension", "extension"]


class TestTransformer:
    """Tests for extraction, saving and restore."""

    def make(self, store, tools=None) -> SchemaTransformer:
        return SchemaTransformer(store, tools or FakePgTools(), ROLES, CAPABILITIES)

    def test_extract_uses_structure_only_options(self, store, source):
        tools = FakePgTools()
        artifact = self.make(store, tools).extract(source)

        _, kind, url, options = tools.calls_of("dump")[0]
        assert kind == "schema"
        assert url == source.libpq_url
        for option in ("--schema-only", "--schema=public", "--no-owner", "--no-privileges", "--no-comments"):
            assert option in options
        assert artifact.raw == SAMPLE_SCHEMA
        assert artifact.tables == ("customers", "orders")
        assert store.exists(RAW_SCHEMA)

    def test_failed_extract_writes_no_schema_artifact(self, store, source):
        transformer = self.make(store, FakePgTools(failing_dumps=["schema"]))

        with pytest.raises(SchemaExtractionError) as exc_info:
            transformer.extract(source)

        assert exc_info.value.code == "SCHEMA_DUMP_FAILED"
        assert exc_info.value.phase == "schema"
        assert not store.exists(RAW_SCHEMA)
        assert not store.exists(CLEAN_SCHEMA)
        assert "password authentication failed" in store.read_text(DUMP_ERRORS)

    def test_save_and_load_round_trip(self, store, source):
        transformer = self.make(store)
        artifact = transformer.extract(source)
        _, blocked = transformer.check_extensions(source.list_extensions())
        cleaned = transformer.clean(
            SchemaArtifact(raw=artifact.raw, blocked_extensions=blocked, tables=artifact.tables)
        )

        digests = transformer.save(cleaned)

        assert set(digests) == {RAW_SCHEMA, CLEAN_SCHEMA, RLS_BACKUP, "schema_removed.json"}
        assert "CREATE POLICY orders_owner" in store.read_text(RLS_BACKUP)
        index = json.loads(store.read_text("schema_removed.json"))
        assert index["blocked_extensions"] == ["pgsodium"]
        assert transformer.load() == cleaned

    def test_save_requires_cleaned_text(self, store):
        with pytest.raises(ValueError):
            self.make(store).save(SchemaArtifact(raw="SELECT 1;\n"))

    def test_restore_counts_error_markers(self, store, source, target):
        tools = FakePgTools(
            script_stderr={
                "schema.sql": (
                    'psql:/w/schema.sql:12: ERROR:  role "anon" does not exist\n'
                    "psql:/w/schema.sql:40: NOTICE:  no ERROR here\n"
                    'psql:/w/schema.sql:52: ERROR:  extension "x" is not available\n'
                )
            }
        )
        transformer = self.make(store, tools)
        transformer.save(cleaned_sample())

        result = transformer.restore(target)

        assert result.errors == 2
        assert tools.calls_of("psql")[0][2] == target.libpq_url
