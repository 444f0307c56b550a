"""Tests for dicomeditor/script.py and dicomeditor/codec.py."""

import os
import xml.etree.ElementTree as ET

import pytest

from dicomeditor import codec
from dicomeditor.config import _REPO_ROOT
from dicomeditor.errors import ScriptParseError, ScriptSaveError
from dicomeditor.script import (
    ELEMENT,
    PARAM,
    REMOVE,
    Directive,
    Script,
    element,
    keep,
    parameter,
    parse_group,
    remove,
)


def _sample_script() -> Script:
    return Script([
        parameter("UIDROOT", "1.2.3"),
        element("00100010", "@empty()", label="PatientName"),
        element("00100020", "@hash(this,8)", label="PatientID"),
        element("00080080", "@remove()", label="InstitutionName", enabled=False),
        remove("privategroups", "Remove private groups"),
        remove("unspecifiedelements", "Remove unchecked elements", enabled=False),
        keep("group18", "Keep group 0018"),
    ])


class TestDirective:
    def test_element_tag_uppercased(self):
        d = element("0020000d", "@keep()")
        assert d.key == "0020000D"
        assert d.tag == 0x0020000D

    def test_element_tag_must_be_eight_hex_digits(self):
        with pytest.raises(ValueError):
            element("0010001", "@empty()")
        with pytest.raises(ValueError):
            element("0010001G", "@empty()")

    def test_parameters_are_always_enabled(self):
        assert Directive(PARAM, "X", "1", enabled=False).enabled is True

    def test_surrounding_whitespace_stripped(self):
        d = element(" 00100010 ", "  @empty()\n", label=" PatientName ")
        assert (d.key, d.body, d.label) == ("00100010", "@empty()", "PatientName")

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            Directive("x", "key")

    @pytest.mark.parametrize("selector", ["group18", "group0018", "0018", "18", "GROUP18"])
    def test_group_selectors(self, selector):
        assert parse_group(selector) == 0x0018
        assert keep(selector).group == 0x0018

    def test_bad_group_selector(self):
        assert parse_group("safeprivate") is None


class TestScriptModel:
    def test_order_preserved(self):
        s = _sample_script()
        assert [d.identity for d in s][:3] == [
            (PARAM, "UIDROOT"), (ELEMENT, "00100010"), (ELEMENT, "00100020"),
        ]

    def test_duplicate_identity_rejected(self):
        s = _sample_script()
        with pytest.raises(ValueError):
            s.add(element("00100010", "@remove()"))

    def test_lookup_is_case_insensitive_for_tags(self):
        s = _sample_script()
        assert s.get(ELEMENT, "0008005a") is None
        assert (ELEMENT, "0020000d") not in s
        s.add(element("0020000D", "@keep()"))
        assert s.get(ELEMENT, "0020000d").body == "@keep()"

    def test_checked_and_uncheck_all(self):
        s = _sample_script()
        checked = {d.identity for d in s.checked()}
        assert (ELEMENT, "00080080") not in checked
        assert (REMOVE, "unspecifiedelements") not in checked
        assert (PARAM, "UIDROOT") in checked

        s.uncheck_all()
        assert [d.kind for d in s.checked()] == [PARAM]
        assert len(s) == 7

    def test_edit_keeps_position(self):
        s = _sample_script()
        s.set_body(ELEMENT, "00100010", "  ANON  ")
        s.set_enabled(ELEMENT, "00080080", True)
        keys = [d.key for d in s]
        assert keys.index("00100010") == 1
        assert s.get(ELEMENT, "00100010").body == "ANON"
        assert s.get(ELEMENT, "00080080").enabled is True

    def test_edit_missing_directive_raises(self):
        with pytest.raises(KeyError):
            _sample_script().set_enabled(ELEMENT, "7FE00010", False)

    def test_parameters(self):
        assert _sample_script().parameters() == {"UIDROOT": "1.2.3"}


class TestCanonicalText:
    def test_exact_format(self):
        s = Script([
            parameter("NAME", "A & B"),
            element("00100010", "@empty()", label='Patient "Name"'),
            remove("privategroups", "x", enabled=False),
        ])
        assert codec.dumps(s) == (
            "<script>\n"
            ' <p t="NAME">A &amp; B</p>\n'
            ' <e en="T" t="00100010" n="Patient &quot;Name&quot;">@empty()</e>\n'
            ' <r en="F" t="privategroups">x</r>\n'
            "</script>\n"
        )

    def test_round_trip(self):
        s = _sample_script()
        assert codec.loads(codec.dumps(s)) == s

    def test_round_trip_with_padded_body(self):
        s = Script([element("00100010", " padded ", label=" Name ")])
        assert codec.loads(codec.dumps(s)) == s

    def test_body_with_markup_characters_survives(self):
        s = Script([element("00080080", '@contents(this,"<.*>","")')])
        assert codec.loads(codec.dumps(s)) == s

    def test_bare_ampersand_repaired(self):
        text = '<script>\n <p t="SITE">R&D</p>\n</script>\n'
        assert codec.loads(text).parameters() == {"SITE": "R&D"}

    def test_already_escaped_text_kept(self):
        text = '<script>\n <p t="SITE">R&amp;D</p>\n</script>\n'
        assert codec.loads(text).parameters() == {"SITE": "R&D"}

    def test_bad_children_skipped(self):
        text = (
            "<script>\n"
            ' <e en="T" t="XYZ">@empty()</e>\n'
            ' <q t="00100010">?</q>\n'
            ' <e en="T">@empty()</e>\n'
            ' <e en="T" t="00100010">@empty()</e>\n'
            ' <e en="T" t="00100010">@remove()</e>\n'
            "</script>\n"
        )
        s = codec.loads(text)
        assert [(d.key, d.body) for d in s] == [("00100010", "@empty()")]

    def test_corrupt_text_raises(self):
        with pytest.raises(ScriptParseError):
            codec.loads("<script><e t='00100010'>")

    def test_wrong_root_raises(self):
        with pytest.raises(ScriptParseError):
            codec.loads("<profile></profile>")

    def test_blank_text_is_empty_script(self):
        assert len(codec.loads("  \n")) == 0

    def test_tree_form(self):
        root = codec.to_tree(_sample_script())
        assert root.tag == "script"
        first = root[1]
        assert first.tag == "e" and first.get("t") == "00100010"
        assert first.get("en") == "T" and first.get("n") == "PatientName"
        assert root[0].get("en") is None
        assert codec.from_tree(ET.fromstring(ET.tostring(root))) == _sample_script()


class TestFiles:
    def test_save_and_load(self, tmp_path):
        path = tmp_path / "dicom-anonymizer.script"
        codec.save(_sample_script(), path)
        assert codec.load(path) == _sample_script()
        assert [p.name for p in tmp_path.iterdir()] == ["dicom-anonymizer.script"]

    def test_missing_file_is_empty_script(self, tmp_path):
        assert len(codec.load(tmp_path / "absent.script")) == 0

    def test_empty_file_is_empty_script(self, tmp_path):
        path = tmp_path / "empty.script"
        path.write_text("")
        assert len(codec.load(path)) == 0

    def test_save_failure_is_fatal(self, tmp_path):
        with pytest.raises(ScriptSaveError):
            codec.save(_sample_script(), tmp_path / "missing-dir" / "x.script")

    def test_shipped_profile_loads(self):
        s = codec.load(os.path.join(_REPO_ROOT, "dicom-anonymizer.script"))
        assert s.get(ELEMENT, "00100020").body == "@hash(this,8)"
        assert "UIDROOT" in s.parameters()


class TestProperties:
    def test_layout(self):
        props = codec.to_properties(_sample_script())
        assert props["p.UIDROOT"] == "1.2.3"
        assert "enabled.p.UIDROOT" not in props
        assert props["e.00100010"] == "@empty()"
        assert props["enabled.e.00100010"] == "T"
        assert props["enabled.e.00080080"] == "F"
        assert props["label.e.00100010"] == "PatientName"
        assert props["enabled.r.unspecifiedelements"] == "F"

    def test_round_trip(self):
        s = _sample_script()
        assert codec.from_properties(codec.to_properties(s)) == s

    def test_missing_enabled_means_enabled(self):
        s = codec.from_properties({"e.00100010": "@empty()"})
        assert s.get(ELEMENT, "00100010").enabled is True

    def test_unknown_kind_raises(self):
        with pytest.raises(ScriptParseError):
            codec.from_properties({"z.thing": "1"})
