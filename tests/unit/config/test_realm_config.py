from __future__ import annotations

from pathlib import Path

import pytest

from realm_index.config import CliOverrides, load_effective_config


def test_merge_order_defaults_then_realm_file_then_overrides(tmp_path: Path) -> None:
    (tmp_path / "realm_index.toml").write_text(
        "\n".join(
            [
                "[realm]",
                'url = "https://cards.example/catalog"',
                "",
                "[index]",
                "max_link_depth = 3",
                "",
                "[loader]",
                'known_realms = ["https://remote.example/zoo"]',
                "",
                "[loader.import_map]",
                'zoo = "https://remote.example/zoo/"',
                "",
                "[runner]",
                'mode = "queue"',
                "",
                "[limits]",
                "max_search_hits = 7",
            ]
        ),
        encoding="utf-8",
    )

    config = load_effective_config(
        tmp_path, CliOverrides(store_mode="persistent", max_search_hits=9)
    )

    assert config.realm_url == "https://cards.example/catalog/"
    assert config.index.max_link_depth == 3
    assert config.index.module_extensions == (".py",)
    assert config.loader.known_realms == ("https://remote.example/zoo/",)
    assert config.loader.effective_import_map() == {
        "base": "https://cardstack.com/base/",
        "zoo": "https://remote.example/zoo/",
    }
    assert config.runner_mode == "queue"
    assert config.store_mode == "persistent"
    assert config.limits.max_search_hits == 9
    assert config.data_dir == (tmp_path / ".realm_index").resolve()


def test_defaults_apply_without_a_realm_file(tmp_path: Path) -> None:
    config = load_effective_config(tmp_path)

    public = config.to_public_dict()
    assert public["realm_url"] == "http://localhost/realm/"
    assert public["index"] == {
        "module_extensions": [".py"],
        "ignore_files": [".monacoignore", ".gitignore"],
        "max_link_depth": 5,
    }
    assert public["runner"] == {"mode": "in-process"}
    assert public["store"] == {"mode": "memory"}


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ('[runner]\nmode = "threads"\n', "runner.mode"),
        ("[index]\nmax_link_depth = 0\n", "index.max_link_depth"),
        ("[index]\nmax_link_depth = 21\n", "<= 20"),
        ('[index]\nmodule_extensions = ["py"]\n', "must start with '.'"),
        ('[realm]\nurl = "relative/path"\n', "realm.url"),
        ('index = "flat"\n', "Config section 'index' must be a table."),
    ],
)
def test_invalid_config_values_raise_value_error(
    tmp_path: Path, content: str, message: str
) -> None:
    (tmp_path / "realm_index.toml").write_text(content, encoding="utf-8")

    with pytest.raises(ValueError, match=message):
        load_effective_config(tmp_path)


def test_invalid_override_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="overrides.store_mode"):
        load_effective_config(tmp_path, CliOverrides(store_mode="disk"))
