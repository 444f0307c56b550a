"""Tests for dicomeditor/batch.py."""

import os
from pathlib import Path

import numpy as np
import pydicom
import pytest
from pydicom.dataset import FileDataset
from pydicom.uid import ExplicitVRLittleEndian

from dicomeditor import batch
from dicomeditor.batch import BatchReport, FileFilter, Outcome, RenamePolicy, no_phi_name
from dicomeditor.script import Script, element, remove


def _write_dicom(path, patient_name: str = "Test^Patient") -> None:
    """Write a minimal valid DICOM file to *path*."""
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.UID("1.2.840.10008.5.1.4.1.1.2")
    file_meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\1" * 128)
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.PatientName = patient_name
    ds.PatientID = "99999"
    ds.Modality = "CT"
    ds.add_new(0x00091001, "LO", "vendor")
    ds.Rows = 4
    ds.Columns = 4
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.PixelRepresentation = 0
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelData = np.zeros((4, 4), dtype=np.uint16).tobytes()
    ds.save_as(str(path))


def _script() -> Script:
    return Script([
        element("00100010", "@empty()"),
        element("00100020", "@hash(this,8)"),
        remove("privategroups"),
    ])


def _by_name(report: BatchReport) -> dict:
    return {r.path.name: r.outcome for r in report.results}


class TestNoPhiName:
    @pytest.mark.parametrize("name,expected", [
        ("scan.dcm", "scan-no-phi.dcm"),
        ("scan", "scan-no-phi"),
        ("a.b.dcm", "a.b-no-phi.dcm"),
        ("1.2.840.1234", "1.2.840.1234-no-phi"),
    ])
    def test_suffix(self, name, expected):
        assert no_phi_name(Path("/data") / name) == Path("/data") / expected

    @pytest.mark.parametrize("name", ["scan-no-phi.dcm", "scan-no-phi", "1.2.3-no-phi"])
    def test_already_suffixed(self, name):
        assert no_phi_name(Path(name)) is None


class TestFileFilter:
    def test_extensions(self):
        f = FileFilter.of([".dcm", ""])
        assert f.accepts(Path("a.dcm"))
        assert f.accepts(Path("a.DCM"))
        assert f.accepts(Path("IM0001"))
        assert f.accepts(Path("1.2.840.1234"))
        assert not f.accepts(Path("notes.txt"))

    def test_hidden_files_rejected(self):
        assert not FileFilter().accepts(Path(".dcmedit-x.tmp"))
        assert FileFilter().accepts(Path("notes.txt"))


class TestRun:
    def test_missing_root_gives_empty_report(self, tmp_path):
        report = batch.run(tmp_path / "absent", batch.anonymize_operation(_script()))
        assert isinstance(report, BatchReport)
        assert report.total_files == 0

    def test_suffix_policy_idempotent(self, tmp_path):
        _write_dicom(tmp_path / "scan.dcm", patient_name="Doe^John")
        op = batch.anonymize_operation(_script(), rename_policy=RenamePolicy.SUFFIX_NO_PHI)

        first = batch.run(tmp_path, op, rename_policy=RenamePolicy.SUFFIX_NO_PHI)
        assert _by_name(first) == {"scan.dcm": Outcome.OK}
        out = tmp_path / "scan-no-phi.dcm"
        assert pydicom.dcmread(str(out)).PatientName == ""
        assert pydicom.dcmread(str(tmp_path / "scan.dcm")).PatientName == "Doe^John"

        second = batch.run(tmp_path, op, rename_policy=RenamePolicy.SUFFIX_NO_PHI)
        assert _by_name(second) == {
            "scan-no-phi.dcm": Outcome.SKIP,
            "scan.dcm": Outcome.OK,
        }
        assert sorted(p.name for p in tmp_path.iterdir()) == ["scan-no-phi.dcm", "scan.dcm"]

    def test_in_place(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        report = batch.run(tmp_path, batch.anonymize_operation(_script()))
        assert report.succeeded
        assert pydicom.dcmread(str(tmp_path / "a.dcm")).PatientName == ""

    def test_sop_instance_uid_policy(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        uid = pydicom.dcmread(str(tmp_path / "a.dcm")).SOPInstanceUID
        policy = RenamePolicy.SOP_INSTANCE_UID
        report = batch.run(tmp_path, batch.anonymize_operation(_script(), rename_policy=policy),
                           rename_policy=policy)
        assert report.results[0].output == tmp_path / f"{uid}.dcm"
        assert (tmp_path / f"{uid}.dcm").exists()

    def test_quarantine_and_skip_reported(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        (tmp_path / "b.dcm").write_bytes(b"JUNK")
        script = Script([element("00100020", "@lookup(this,ptid)")])
        report = batch.run(tmp_path, batch.anonymize_operation(script, lookup_table={}))
        assert _by_name(report) == {"a.dcm": Outcome.QUARANTINE, "b.dcm": Outcome.SKIP}
        assert not report.succeeded

    def test_failure_does_not_stop_the_walk(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        _write_dicom(tmp_path / "b.dcm")

        def op(in_file, out_file):
            if in_file.name == "a.dcm":
                raise OSError("disk on fire")
            return batch.fix_vrs_operation()(in_file, out_file)

        report = batch.run(tmp_path, op)
        assert _by_name(report) == {"a.dcm": Outcome.FAILED, "b.dcm": Outcome.OK}
        assert "disk on fire" in report.results[0].message
        assert "a.dcm" in report.summary()

    def test_recursive_and_filter(self, tmp_path):
        sub = tmp_path / "sub"
        sub.mkdir()
        _write_dicom(tmp_path / "a.dcm")
        _write_dicom(sub / "b.dcm")
        (tmp_path / "notes.txt").write_text("not an image")
        (tmp_path / ".hidden.dcm").write_bytes(b"x")
        op = batch.clear_preamble_operation()
        dcm_only = FileFilter.of([".dcm"])

        flat = batch.run(tmp_path, op, file_filter=dcm_only)
        assert [r.path.name for r in flat.results] == ["a.dcm"]

        deep = batch.run(tmp_path, op, file_filter=dcm_only, recursive=True)
        assert [r.path.name for r in deep.results] == ["a.dcm", "b.dcm"]
        assert (sub / "b.dcm").read_bytes()[:128] == bytes(128)

    def test_single_file_root(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        report = batch.run(tmp_path / "a.dcm", batch.clear_preamble_operation())
        assert _by_name(report) == {"a.dcm": Outcome.OK}

    def test_clear_preamble_skips_non_dicom(self, tmp_path):
        (tmp_path / "junk.dcm").write_bytes(b"JUNK")
        report = batch.run(tmp_path, batch.clear_preamble_operation())
        assert _by_name(report) == {"junk.dcm": Outcome.SKIP}
        assert report.succeeded

    def test_cancel_between_files(self, tmp_path):
        for name in ("a.dcm", "b.dcm", "c.dcm"):
            _write_dicom(tmp_path / name)
        visited = []

        def op(in_file, out_file):
            visited.append(in_file.name)
            return batch.clear_preamble_operation()(in_file, out_file)

        report = batch.run(tmp_path, op, should_cancel=lambda: len(visited) >= 2)
        assert visited == ["a.dcm", "b.dcm"]
        assert report.cancelled

    def test_unlistable_directory_is_reported_and_walk_continues(self, tmp_path, monkeypatch):
        _write_dicom(tmp_path / "a.dcm")
        (tmp_path / "bad").mkdir()
        _write_dicom(tmp_path / "bad" / "x.dcm")
        (tmp_path / "c").mkdir()
        _write_dicom(tmp_path / "c" / "d.dcm")
        real_listdir = os.listdir

        def listdir(path):
            if Path(path).name == "bad":
                raise PermissionError(13, "Permission denied", str(path))
            return real_listdir(path)

        monkeypatch.setattr(os, "listdir", listdir)
        report = batch.run(tmp_path, batch.clear_preamble_operation(), recursive=True)

        assert [(r.path.name, r.outcome) for r in report.results] == [
            ("a.dcm", Outcome.OK),
            ("bad", Outcome.FAILED),
            ("d.dcm", Outcome.OK),
        ]
        assert "Permission denied" in report.results[1].message
        assert not report.succeeded

    def test_symlink_loop_visits_each_file_once(self, tmp_path):
        _write_dicom(tmp_path / "a.dcm")
        sub = tmp_path / "sub"
        sub.mkdir()
        os.symlink(tmp_path, sub / "loop", target_is_directory=True)

        report = batch.run(tmp_path, batch.anonymize_operation(_script()), recursive=True)

        assert [r.path for r in report.results] == [tmp_path / "a.dcm"]
