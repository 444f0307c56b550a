"""Tests for dicomeditor/tables.py and dicomeditor/properties.py."""

import sqlite3

import pytest

from dicomeditor.properties import (
    ApplicationProperties,
    load_properties,
    parse_properties,
    store_properties,
)
from dicomeditor.tables import IntegerTable, LookupTable


class TestPropertiesFormat:
    def test_parse(self):
        props = parse_properties([
            "# comment\n",
            "! also a comment\n",
            "\n",
            "ptid/12345 = TRIAL-0001\n",
            "name:value\n",
            "a=b=c\n",
        ])
        assert props == {"ptid/12345": "TRIAL-0001", "name": "value", "a": "b=c"}

    def test_last_duplicate_wins(self):
        props = parse_properties(["k=1", "other=x", "k=2"])
        assert props["k"] == "2"
        assert list(props) == ["other", "k"]

    def test_round_trip(self, tmp_path):
        path = tmp_path / "x.properties"
        props = {"b": "2", "a": "1", "label.e.00100010": "PatientName"}
        store_properties(props, path)
        assert load_properties(path) == props
        assert list(load_properties(path)) == ["b", "a", "label.e.00100010"]

    def test_missing_file(self, tmp_path):
        assert load_properties(tmp_path / "nope.properties") == {}


class TestApplicationProperties:
    def test_flag_defaults_are_recorded(self, tmp_path):
        path = tmp_path / "dicomeditor.properties"
        props = ApplicationProperties(path)
        assert props.get_flag("change-name", True) is True
        assert props.get_flag("use-sopiuid", False) is False
        props.store()
        assert load_properties(path) == {"change-name": "yes", "use-sopiuid": "no"}

    def test_flags_persist(self, tmp_path):
        path = tmp_path / "dicomeditor.properties"
        props = ApplicationProperties(path)
        props.put_flag("change-name", False)
        props.put("x", "10")
        props.store()
        reloaded = ApplicationProperties(path)
        assert reloaded.get_flag("change-name", True) is False
        assert reloaded.get("x") == "10"


class TestLookupTable:
    def test_load(self, tmp_path):
        path = tmp_path / "lookup-table.properties"
        path.write_text("ptid/12345=TRIAL-0001\nptid/12345=TRIAL-0009\nPTID/12345=OTHER\n")
        table = LookupTable.load(path)
        assert table["ptid/12345"] == "TRIAL-0009"
        assert table.get_replacement("ptid", "12345") == "TRIAL-0009"
        assert table.get_replacement("ptid", "99999") is None
        assert len(table) == 2

    def test_missing_file_is_empty(self, tmp_path):
        table = LookupTable.load(tmp_path / "absent.properties")
        assert len(table) == 0


class TestIntegerTable:
    def test_monotonic_per_key_type(self):
        with IntegerTable() as table:
            assert table.get_int("ptid", "A") == 1
            assert table.get_int("ptid", "B") == 2
            assert table.get_int("acc", "A") == 1
            assert table.get_int("ptid", "A") == 1
            assert len(table) == 3

    def test_persistent_across_runs(self, tmp_path):
        path = tmp_path / "integers.db"
        with IntegerTable(path) as table:
            first = table.get_int("ptid", "12345")
            table.get_int("ptid", "67890")
        with IntegerTable(path) as table:
            assert table.get_int("ptid", "12345") == first
            assert table.get_int("ptid", "new") == 3

    def test_exclusive_while_held(self, tmp_path):
        path = tmp_path / "integers.db"
        with IntegerTable(path) as table:
            table.get_int("ptid", "12345")
            other = sqlite3.connect(str(path), timeout=0)
            try:
                with pytest.raises(sqlite3.OperationalError):
                    other.execute("SELECT COUNT(*) FROM integers").fetchone()
            finally:
                other.close()
