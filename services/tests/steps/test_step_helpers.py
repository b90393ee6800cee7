"""Tests for the pure helpers behind the provisioning steps."""

import pytest
import yaml

from shipyard.errors import ValidationError
from shipyard.steps.database import (
    DatabaseCreateInput,
    create_command,
    mysql_script,
    postgres_script,
)
from shipyard.steps.deploy_key import host_alias_for, host_block, replace_host_block
from shipyard.steps.deploy_workflow import WorkflowLoader, feature_branch_name, upsert_host_entry
from shipyard.steps.env import EnvSetupInput, format_env_value, mask_env_secrets, merge_env
from shipyard.steps.executor import validate_input
from shipyard.steps.folder import FolderSetupInput, folder_commands
from shipyard.steps.registry import STEP_REGISTRY, STEP_SEQUENCE, get_step, load_steps
from shipyard.steps.ssh_key import authorize_key

BASE = {"host": "h", "username": "u", "applicationName": "shop"}


class TestValidateInput:
    def test_missing_fields_use_wire_names(self):
        load_steps()
        with pytest.raises(ValidationError) as exc_info:
            validate_input(get_step("database-create"), {"host": "h"})

        missing = exc_info.value.missing
        assert {"username", "applicationName", "dbType", "dbName", "dbUsername", "dbPassword"} <= set(missing)
        assert exc_info.value.message.startswith("Missing required fields: ")
        assert exc_info.value.http_status == 400

    def test_blank_counts_as_missing(self):
        load_steps()
        with pytest.raises(ValidationError) as exc_info:
            validate_input(get_step("folder-setup"), {**BASE, "username": "   ", "pathname": "/srv/shop"})
        assert exc_info.value.missing == ["username"]

    def test_relative_path_invalid(self):
        load_steps()
        with pytest.raises(ValidationError) as exc_info:
            validate_input(get_step("folder-setup"), {**BASE, "pathname": "srv/shop"})
        assert exc_info.value.message.startswith("Invalid fields: pathname")

    def test_unknown_fields_ignored(self):
        params = FolderSetupInput.model_validate({**BASE, "pathname": "/srv/shop/", "extra": 1})
        assert params.pathname == "/srv/shop"
        assert params.application_name == "shop"

    def test_db_type_aliases(self):
        params = DatabaseCreateInput.model_validate(
            {**BASE, "dbType": "MariaDB", "dbName": "d", "dbUsername": "u", "dbPassword": "p"}
        )
        assert params.db_type == "mysql"

    def test_repository_format(self):
        load_steps()
        with pytest.raises(ValidationError) as exc_info:
            validate_input(get_step("ssh-key-setup"), {**BASE, "selectedRepo": "octo"})
        assert exc_info.value.message.startswith("Invalid fields: selectedRepo")
        assert "Invalid repository format" in exc_info.value.message

    def test_optional_repository_blank_is_unset(self):
        params = EnvSetupInput.model_validate({**BASE, "pathname": "/srv/shop", "selectedRepo": ""})
        assert params.selected_repo is None

    def test_every_step_registered(self):
        load_steps()
        assert set(STEP_SEQUENCE) | {"check-github-token"} == set(STEP_REGISTRY)


class TestDatabaseScripts:
    def test_mysql_idempotent_statements(self):
        script = mysql_script("shop", "shop_user", "pw")
        assert "CREATE DATABASE IF NOT EXISTS `shop`;" in script
        assert "CREATE USER IF NOT EXISTS 'shop_user'@'localhost' IDENTIFIED BY 'pw';" in script
        assert "ALTER USER 'shop_user'@'localhost' IDENTIFIED BY 'pw';" in script

    def test_mysql_escaping(self):
        script = mysql_script("sh`op", "o'brien", "p'w\\")
        assert "`sh``op`" in script
        assert "'o''brien'" in script
        assert "'p''w\\\\'" in script

    def test_postgres_guards(self):
        script = postgres_script("shop", "shop_user", "pw")
        assert "WHERE NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = 'shop_user')\\gexec" in script
        assert "WHERE NOT EXISTS (SELECT 1 FROM pg_database WHERE datname = 'shop')\\gexec" in script
        assert 'ALTER ROLE "shop_user" WITH LOGIN PASSWORD \'pw\';' in script

    def test_commands_carry_no_values(self):
        assert create_command("mysql") == "sudo -n mysql --batch"
        assert "psql" in create_command("postgresql")
        assert "ON_ERROR_STOP=1" in create_command("postgresql")


class TestFolderCommands:
    def test_converging_commands(self):
        assert folder_commands("/srv/my shop", "deploy:deploy") == [
            "sudo -n mkdir -p '/srv/my shop'",
            "sudo -n chown -R deploy:deploy '/srv/my shop'",
            "sudo -n chmod -R 755 '/srv/my shop'",
        ]


class TestMergeEnv:
    def test_rewrites_and_appends(self):
        content = "APP_NAME=Shop\n# DB_HOST=old\nDB_HOST=127.0.0.1\nDB_PORT=3306\n"
        merged = merge_env(content, {"DB_HOST": "localhost", "DB_PASSWORD": "p w"})
        assert merged == (
            'APP_NAME=Shop\n# DB_HOST=old\nDB_HOST=localhost\nDB_PORT=3306\nDB_PASSWORD="p w"\n'
        )

    def test_duplicate_keys_collapse(self):
        merged = merge_env("A=1\nA=2\n", {"A": "3"})
        assert merged == "A=3\n"

    def test_export_prefix(self):
        assert merge_env("export A=1\n", {"A": "2"}) == "A=2\n"

    def test_format_value(self):
        assert format_env_value("plain") == "plain"
        assert format_env_value('has"quote') == '"has\\"quote"'
        assert format_env_value("") == ""

    def test_mask(self):
        assert mask_env_secrets("DB_USERNAME=u\nDB_PASSWORD=secret") == "DB_USERNAME=u\nDB_PASSWORD=***"


class TestSSHConfig:
    def test_alias(self):
        assert host_alias_for("github.com", "my shop") == "github.com-my_shop"

    def test_appends_to_existing_config(self):
        block = host_block("github.com-shop", "github.com", "shop_deploy_key", "octo/shop", "shop")
        config = replace_host_block("Host example\n  HostName example.com\n", "github.com-shop", block)
        assert config.startswith("Host example\n  HostName example.com\n\n# Deploy key for octo/shop (shop)\n")
        assert config.endswith("  IdentitiesOnly yes\n")

    def test_replaces_previous_block(self):
        old = host_block("github.com-shop", "github.com", "old_key", "octo/old", "shop")
        new = host_block("github.com-shop", "github.com", "shop_deploy_key", "octo/shop", "shop")
        config = "Host a\n  User x\n\n" + old + "\n\nHost b\n  User y\n"

        updated = replace_host_block(config, "github.com-shop", new)

        assert "old_key" not in updated
        assert "octo/old" not in updated
        assert updated.count("Host github.com-shop") == 1
        assert "Host a" in updated and "Host b" in updated

    def test_empty_config(self):
        assert replace_host_block("", "x", "Host x") == "Host x\n"


WORKFLOW = """\
name: Deploy
on:
  push:
    branches: [main]
hosts:
  - application: blog
    hostname: 10.0.0.1
  - application: shop
    hostname: 10.0.0.2
    keep: yes
"""


class TestDeployWorkflow:
    def test_updates_existing_entry(self):
        updated = upsert_host_entry(WORKFLOW, {"application": "shop", "hostname": "203.0.113.10"})
        doc = yaml.load(updated, Loader=WorkflowLoader)

        assert "on" in doc
        assert True not in doc
        shop = doc["hosts"][1]
        assert shop["hostname"] == "203.0.113.10"
        assert shop["keep"] == "yes"
        assert len(doc["hosts"]) == 2
        assert updated.startswith("name: Deploy\non:\n")

    def test_appends_new_entry(self):
        updated = upsert_host_entry(WORKFLOW, {"application": "api", "hostname": "h"})
        doc = yaml.load(updated, Loader=WorkflowLoader)
        assert [h["application"] for h in doc["hosts"]] == ["blog", "shop", "api"]

    def test_empty_document(self):
        updated = upsert_host_entry("", {"application": "api"})
        assert yaml.safe_load(updated) == {"hosts": [{"application": "api"}]}

    def test_non_mapping_rejected(self):
        with pytest.raises(ValueError):
            upsert_host_entry("- a\n- b\n", {"application": "api"})

    def test_branch_name(self):
        assert feature_branch_name("my shop!").startswith("deploy-update-my-shop-")


class TestAuthorizeKey:
    def test_appends_new_key(self):
        updated = authorize_key("ssh-rsa AAAA dev@laptop\n", "ssh-ed25519 NEW ci-shop", "ci-shop")
        assert updated == "ssh-rsa AAAA dev@laptop\nssh-ed25519 NEW ci-shop\n"

    def test_replaces_keys_with_same_comment(self):
        current = "ssh-ed25519 OLD1 ci-shop\nssh-rsa AAAA dev@laptop\nssh-ed25519 OLD2 ci-shop\n"
        updated = authorize_key(current, "ssh-ed25519 NEW ci-shop", "ci-shop")
        assert updated == "ssh-rsa AAAA dev@laptop\nssh-ed25519 NEW ci-shop\n"

    def test_unchanged_when_already_authorized(self):
        current = "ssh-rsa AAAA dev@laptop\nssh-ed25519 NEW ci-shop\n"
        assert authorize_key(current, "ssh-ed25519 NEW ci-shop", "ci-shop") is None

    def test_other_applications_untouched(self):
        current = "ssh-ed25519 BLOG ci-blog\n"
        updated = authorize_key(current, "ssh-ed25519 NEW ci-shop", "ci-shop")
        assert updated == "ssh-ed25519 BLOG ci-blog\nssh-ed25519 NEW ci-shop\n"
