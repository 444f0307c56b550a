"""Tests for dicomeditor/corrector.py."""

import pydicom
from pydicom.dataset import FileDataset
from pydicom.uid import ExplicitVRLittleEndian

from dicomeditor.corrector import correct


def _write_dicom(path) -> None:
    """A file whose PatientName and StudyDescription were written as OB."""
    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.UID("1.2.840.10008.5.1.4.1.1.7")
    file_meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    ds = FileDataset(str(path), {}, file_meta=file_meta, preamble=b"\0" * 128)
    ds.PatientID = "99999"
    ds.add_new(0x00100010, "OB", b"Doe^John")
    ds.add_new(0x00081030, "OB", b"HEAD CT ")
    ds.add_new(0x00091001, "OB", b"\x01\x02")
    ds.save_as(str(path))


class TestCorrect:
    def test_wrong_vrs_fixed(self, tmp_path):
        src = tmp_path / "in.dcm"
        out = tmp_path / "out.dcm"
        _write_dicom(src)
        assert pydicom.dcmread(str(src))[0x00100010].VR == "OB"

        status = correct(src, out)

        assert status.is_ok()
        ds = pydicom.dcmread(str(out))
        assert ds[0x00100010].VR == "PN"
        assert ds.PatientName == "Doe^John"
        assert ds[0x00081030].VR == "LO"
        assert ds.StudyDescription == "HEAD CT"
        assert ds.PatientID == "99999"

    def test_private_elements_left_alone(self, tmp_path):
        src = tmp_path / "in.dcm"
        _write_dicom(src)
        correct(src, src)
        ds = pydicom.dcmread(str(src))
        assert ds[0x00091001].VR == "OB"
        assert ds[0x00091001].value == b"\x01\x02"

    def test_second_run_changes_nothing(self, tmp_path):
        src = tmp_path / "in.dcm"
        _write_dicom(src)
        correct(src, src)
        status = correct(src, src)
        assert status.message == "0 element(s) corrected"

    def test_not_dicom_is_skipped(self, tmp_path):
        src = tmp_path / "junk.dcm"
        src.write_bytes(b"JUNK")
        assert correct(src, src).is_skip()
        assert src.read_bytes() == b"JUNK"
