"""
generate_sample_data.py - Create a synthetic DICOM tree for trying the editor.

Writes a small patient/series tree to data/incoming/ so you can run every
command without real patient data.  Each file carries the things the
editor exists to deal with: identifying elements, a vendor private block,
an overlay, a non-zero preamble and a PatientName stored with the wrong VR.

Usage
-----
    python scripts/generate_sample_data.py                 # data/incoming/
    python scripts/generate_sample_data.py path/to/folder  # custom folder

After running, try:
    python -m dicomeditor fix-vrs data/incoming -r
    python -m dicomeditor anonymize data/incoming -r
    python scripts/audit_phi.py data/incoming
"""

import os
import sys

import numpy as np
import pydicom
from pydicom.dataset import FileDataset
from pydicom.uid import ExplicitVRLittleEndian

OUTPUT_FOLDER = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "incoming"
)


# ---------------------------------------------------------------------------
# Synthetic patients
# ---------------------------------------------------------------------------
_PATIENTS = [
    # (directory, patient_name, patient_id, birth_date, images)
    ("PT001", "Synthetic^Alice", "12345", "19710203", 3),
    ("PT002", "Synthetic^Bob", "67890", "19650912", 2),
    # Not in lookup-table.properties: a @lookup() on PatientID quarantines it
    ("PT003", "Synthetic^Carol", "55555", "19880424", 1),
]


def _make_dicom(
    path: str,
    patient_name: str,
    patient_id: str,
    birth_date: str,
    study_uid: str,
    series_uid: str,
    instance: int,
    size: int = 32,
) -> None:
    """
    Write a single synthetic CT slice.

    The PatientName is written with VR OB, as some old modalities do, so
    ``fix-vrs`` has something to repair.
    """
    rng = np.random.default_rng(instance)
    pixels = rng.normal(1000, 150, size=(size, size)).clip(0, 4095).astype(np.uint16)

    file_meta = pydicom.Dataset()
    file_meta.MediaStorageSOPClassUID = pydicom.uid.UID("1.2.840.10008.5.1.4.1.1.2")
    file_meta.MediaStorageSOPInstanceUID = pydicom.uid.generate_uid()
    file_meta.TransferSyntaxUID = ExplicitVRLittleEndian

    # A preamble that is not all zeros; clear-preamble resets it.
    preamble = b"SYNTHETIC PREAMBLE ".ljust(128, b"\x7f")
    ds = FileDataset(path, {}, file_meta=file_meta, preamble=preamble)

    ds.SOPClassUID = file_meta.MediaStorageSOPClassUID
    ds.SOPInstanceUID = file_meta.MediaStorageSOPInstanceUID
    ds.StudyInstanceUID = study_uid
    ds.SeriesInstanceUID = series_uid
    ds.InstanceNumber = instance

    # --- PHI ---
    name = patient_name.encode("ascii")
    ds.add_new(0x00100010, "OB", name + b" " * (len(name) % 2))
    ds.PatientID = patient_id
    ds.PatientBirthDate = birth_date
    ds.PatientSex = "F" if patient_name.endswith(("Alice", "Carol")) else "M"
    ds.AccessionNumber = f"ACC{patient_id}"
    ds.InstitutionName = "City General Hospital"
    ds.ReferringPhysicianName = "Smith^Jane"
    ds.StudyDate = "20230601"
    ds.StudyTime = "120000"
    ds.Modality = "CT"
    ds.StudyDescription = "HEAD CT"

    # --- Vendor private block ---
    ds.add_new(0x00290010, "LO", "ACME SCANNER 2.1")
    ds.add_new(0x00291010, "LO", f"operator={patient_name}")

    # --- Overlay plane ---
    ds.add_new(0x60000010, "US", size)
    ds.add_new(0x60000011, "US", size)

    # --- Pixel data ---
    ds.Rows = size
    ds.Columns = size
    ds.SamplesPerPixel = 1
    ds.PhotometricInterpretation = "MONOCHROME2"
    ds.PixelRepresentation = 0
    ds.BitsAllocated = 16
    ds.BitsStored = 16
    ds.HighBit = 15
    ds.PixelData = pixels.tobytes()

    ds.save_as(path)


def generate(output_folder: str = OUTPUT_FOLDER) -> None:
    """Generate the synthetic patient tree under *output_folder*."""
    total = sum(p[4] for p in _PATIENTS)
    print(f"Writing {total} synthetic DICOM files to: {output_folder}")
    print("-" * 60)

    count = 0
    for directory, patient_name, patient_id, birth_date, images in _PATIENTS:
        series_dir = os.path.join(output_folder, directory, "series1")
        os.makedirs(series_dir, exist_ok=True)
        study_uid = pydicom.uid.generate_uid()
        series_uid = pydicom.uid.generate_uid()
        for i in range(1, images + 1):
            count += 1
            path = os.path.join(series_dir, f"IM{i:04d}.dcm")
            _make_dicom(path, patient_name, patient_id, birth_date,
                        study_uid, series_uid, instance=i)
            print(f"  [{count:02d}/{total}] {os.path.relpath(path, output_folder)}")

    print("-" * 60)
    print("Done.  Try:")
    print(f"  python -m dicomeditor fix-vrs {output_folder} -r")
    print(f"  python -m dicomeditor anonymize {output_folder} -r")


if __name__ == "__main__":
    generate(sys.argv[1] if len(sys.argv) > 1 else OUTPUT_FOLDER)
