"""Shared fixtures for the execution core tests."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from guarded_agent.application.bash import BashClassifier
from guarded_agent.application.permission import PermissionEngine
from guarded_agent.application.rules import RuleStore


def write_rules(
    path: Path,
    *,
    allow: list[str] | None = None,
    deny: list[str] | None = None,
    ask: list[str] | None = None,
) -> None:
    """ルールファイルを書き込む."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "permissions": {
            "allow": allow or [],
            "deny": deny or [],
            "ask": ask or [],
        }
    }
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """テスト用のワークスペースを作成する."""
    root = tmp_path / "workspace"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def outside(tmp_path: Path) -> Path:
    """ワークスペース外のディレクトリを作成する."""
    path = tmp_path / "outside"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """``~`` の展開先として使うディレクトリを作成する."""
    path = tmp_path / "home"
    path.mkdir()
    return path.resolve()


@pytest.fixture
def global_rules_file(home: Path) -> Path:
    """グローバルスコープのルールファイルのパス."""
    return home / ".guarded-agent" / "permissions.json"


@pytest.fixture
def local_rules_file(workspace: Path) -> Path:
    """ローカルスコープのルールファイルのパス."""
    return workspace / ".guarded-agent" / "permissions.local.json"


@pytest.fixture
def rule_store(global_rules_file: Path, local_rules_file: Path) -> RuleStore:
    """読み込み済みのルールストア."""
    store = RuleStore(global_rules_file, local_rules_file)
    store.load()
    return store


@pytest.fixture
def engine(workspace: Path, rule_store: RuleStore, home: Path) -> PermissionEngine:
    """テスト用のパーミッションエンジン."""
    return PermissionEngine(workspace, rule_store, home=home)


@pytest.fixture
def classifier(engine: PermissionEngine) -> BashClassifier:
    """テスト用のBashコマンド分類器."""
    return BashClassifier(engine)


class RuleWriter:
    """ルールファイルを書き込み、ルールストアを再読み込みするヘルパー."""

    def __init__(self, store: RuleStore, global_path: Path, local_path: Path) -> None:
        self._store = store
        self._paths = {"global": global_path, "local": local_path}

    def __call__(
        self,
        scope: str = "local",
        *,
        allow: list[str] | None = None,
        deny: list[str] | None = None,
        ask: list[str] | None = None,
    ) -> None:
        write_rules(self._paths[scope], allow=allow, deny=deny, ask=ask)
        self._store.load()


@pytest.fixture
def set_rules(
    rule_store: RuleStore, global_rules_file: Path, local_rules_file: Path
) -> RuleWriter:
    """ルールを設定する関数を返す."""
    return RuleWriter(rule_store, global_rules_file, local_rules_file)
