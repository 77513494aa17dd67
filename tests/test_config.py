from __future__ import annotations

import json

import pytest

from bettermake.config import Config, ConfigStore, parse_overrides
from bettermake.errors import ConfigParseError, ConfigTypeError, MissingKey


def test_precedence_defaults_files_then_overrides(write_file):
    write_file("base.yaml", "n: 1\nsamples: [a, b]\nnested:\n  a: 1\n  b: 2\n")
    write_file("site.json", json.dumps({"nested": {"b": 3}, "n": 2}))

    store = ConfigStore(defaults={"n": 0, "threads": 4})
    store.load("base.yaml")
    store.load("site.json")
    store.override(["n=5"])

    cfg = store.config
    assert cfg.get("n") == 5
    assert cfg.get("threads") == 4
    assert cfg.get("nested.a") == 1
    assert cfg.get("nested.b") == 3
    assert cfg.get_list("samples") == ["a", "b"]


def test_overrides_win_even_when_files_load_later(write_file):
    write_file("late.yaml", "n: 7\n")
    store = ConfigStore()
    store.override({"n": 1})
    store.load("late.yaml")
    assert store.get("n") == 1


def test_parse_overrides_reads_yaml_values():
    parsed = parse_overrides(["n=3", "samples=[a,b]", "name=plain", "flag=true", "empty="])
    assert parsed == {"n": 3, "samples": ["a", "b"], "name": "plain", "flag": True, "empty": ""}


def test_parse_overrides_requires_equals():
    with pytest.raises(ConfigParseError) as exc:
        parse_overrides(["novalue"])
    assert exc.value.source == "--config"


def test_missing_key_and_default():
    cfg = Config({"a": 1})
    with pytest.raises(MissingKey) as exc:
        cfg.get("b")
    assert exc.value.key == "b"
    assert cfg.get("b", 42) == 42


def test_typed_lookups():
    cfg = Config({"n": "3", "s": "x", "xs": [1, 2], "flag": True})
    with pytest.raises(ConfigTypeError):
        cfg.get_int("n")
    with pytest.raises(ConfigTypeError):
        cfg.get_int("flag")
    assert cfg.get_str("s") == "x"
    assert cfg.get_list("xs") == [1, 2]
    assert cfg.get_list("s") == ["x"]


def test_nested_values_are_read_only_views():
    cfg = Config({"db": {"host": "h"}, "xs": [1]})
    db = cfg.get("db")
    assert isinstance(db, Config)
    assert db.get("host") == "h"
    assert cfg.get("xs") == (1,)
    with pytest.raises(MissingKey) as exc:
        db.get("port")
    assert exc.value.key == "db.port"


def test_to_dict_is_a_copy():
    cfg = Config({"db": {"host": "h"}})
    d = cfg.to_dict()
    d["db"]["host"] = "changed"
    assert cfg.get("db.host") == "h"


@pytest.mark.parametrize(
    "text",
    [
        "a: [1, 2\n",
        "- 1\n- 2\n",
    ],
)
def test_malformed_or_non_mapping_file(write_file, text):
    write_file("bad.yaml", text)
    with pytest.raises(ConfigParseError) as exc:
        ConfigStore().load("bad.yaml")
    assert exc.value.source == "bad.yaml"


def test_unreadable_file():
    with pytest.raises(ConfigParseError):
        ConfigStore().load("does-not-exist.yaml")


def test_missing_key_is_a_key_error():
    cfg = Config({"a": 1})
    with pytest.raises(KeyError) as exc:
        cfg["b"]
    assert isinstance(exc.value, MissingKey)
    assert str(exc.value).startswith("MissingKey: config has no key 'b'")
