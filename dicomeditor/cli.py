"""
cli.py - Command-line front end.

Usage
-----
    dicomeditor anonymize data/incoming --recursive
    dicomeditor anonymize scan.dcm --no-change-names --use-sopiuid
    dicomeditor fix-vrs data/incoming -r
    dicomeditor clear-preamble data/incoming -r
    dicomeditor set-patient-ids data/trial
    dicomeditor script list --checked
    dicomeditor script set e 00100020 "@hash(this,8)"
    dicomeditor script disable r unspecifiedelements
    dicomeditor script uncheck-all

Exit status is 0 when every file ended OK or SKIP, 1 when any file failed,
was quarantined or the selection was not a directory, and 2 for
configuration or script errors.
"""

import argparse
import logging
import sys
from contextlib import nullcontext
from pathlib import Path
from typing import Optional

from dicomeditor import batch, codec
from dicomeditor.batch import BatchReport, FileFilter, RenamePolicy
from dicomeditor.config import _CONFIG_PATH, AppConfig, load_app_config
from dicomeditor.errors import DicomEditorError, ScriptSaveError
from dicomeditor.patientid import set_patient_ids
from dicomeditor.properties import ApplicationProperties
from dicomeditor.script import ELEMENT, KINDS, PARAM, Directive
from dicomeditor.tables import IntegerTable, LookupTable

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FILES_FAILED = 1
EXIT_CONFIG_ERROR = 2

CHANGE_NAME = "change-name"
USE_SOPIUID = "use-sopiuid"


def _file_filter(args, cfg: AppConfig) -> FileFilter:
    if args.all_files:
        return FileFilter()
    return FileFilter.of(args.ext if args.ext else cfg.extensions)


def _exit_code(report: BatchReport) -> int:
    print(report.summary())
    return EXIT_OK if report.succeeded else EXIT_FILES_FAILED


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_anonymize(args, cfg: AppConfig) -> int:
    props = ApplicationProperties(cfg.properties)
    change_names = props.get_flag(CHANGE_NAME, True)
    use_sopiuid = props.get_flag(USE_SOPIUID, False)
    if args.change_names is not None:
        change_names = args.change_names
        props.put_flag(CHANGE_NAME, change_names)
    if args.use_sopiuid is not None:
        use_sopiuid = args.use_sopiuid
        props.put_flag(USE_SOPIUID, use_sopiuid)
    props.store()

    if use_sopiuid:
        policy = RenamePolicy.SOP_INSTANCE_UID
    elif change_names:
        policy = RenamePolicy.SUFFIX_NO_PHI
    else:
        policy = RenamePolicy.IN_PLACE

    script = codec.load(args.script or cfg.dicom_script)
    lookup = LookupTable.load(args.lookup or cfg.lookup_table)
    integer_path = args.integer_table or cfg.integer_table
    tables = IntegerTable(integer_path) if integer_path else nullcontext()

    with tables as integer_table:
        op = batch.anonymize_operation(
            script,
            lookup_table=lookup,
            integer_table=integer_table,
            force_ivrle=args.force_ivrle or cfg.force_ivrle,
            rename_policy=policy,
        )
        report = batch.run(
            args.path,
            op,
            file_filter=_file_filter(args, cfg),
            recursive=args.recursive or cfg.recursive,
            rename_policy=policy,
        )
    return _exit_code(report)


def cmd_fix_vrs(args, cfg: AppConfig) -> int:
    report = batch.run(
        args.path,
        batch.fix_vrs_operation(),
        file_filter=_file_filter(args, cfg),
        recursive=args.recursive or cfg.recursive,
    )
    return _exit_code(report)


def cmd_clear_preamble(args, cfg: AppConfig) -> int:
    report = batch.run(
        args.path,
        batch.clear_preamble_operation(),
        file_filter=_file_filter(args, cfg),
        recursive=args.recursive or cfg.recursive,
    )
    return _exit_code(report)


def cmd_set_patient_ids(args, cfg: AppConfig) -> int:
    report = set_patient_ids(args.path, file_filter=_file_filter(args, cfg))
    return _exit_code(report)


def _format_directive(d: Directive) -> str:
    mark = " " if d.kind == PARAM else ("x" if d.enabled else "-")
    label = f" ({d.label})" if d.label else ""
    return f"[{mark}] {d.kind} {d.key}{label}: {d.body}"


def cmd_script(args, cfg: AppConfig) -> int:
    path = Path(args.script or cfg.dicom_script)
    script = codec.load(path)

    if args.action == "list":
        directives = script.checked() if args.checked else list(script)
        for d in directives:
            print(_format_directive(d))
        return EXIT_OK

    if args.action == "set":
        if script.get(args.kind, args.key) is None:
            script.add(Directive(args.kind, args.key, args.body.strip(), label=args.label or ""))
        else:
            script.set_body(args.kind, args.key, args.body)
    elif args.action in ("enable", "disable"):
        if script.get(args.kind, args.key) is None:
            logger.error("No directive %s %s in %s", args.kind, args.key, path)
            return EXIT_CONFIG_ERROR
        script.set_enabled(args.kind, args.key, args.action == "enable")
    elif args.action == "uncheck-all":
        script.uncheck_all()

    codec.save(script, path)
    return EXIT_OK


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def _add_selection_args(p: argparse.ArgumentParser, recursive: bool = True) -> None:
    p.add_argument("path", help="A file or a directory")
    if recursive:
        p.add_argument("-r", "--recursive", action="store_true",
                       help="Descend into subdirectories")
    p.add_argument("--ext", action="append",
                   help="Accept files with this extension (repeatable; '' for none)")
    p.add_argument("--all-files", action="store_true",
                   help="Accept every file regardless of extension")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dicomeditor",
        description="Edit, de-identify and repair DICOM Part-10 files.",
    )
    parser.add_argument("--config", default=_CONFIG_PATH, help="Path to config.yaml")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug messages")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("anonymize", help="Apply the anonymizer script")
    _add_selection_args(p)
    p.add_argument("--change-names", action=argparse.BooleanOptionalAction, default=None,
                   help="Write NAME-no-phi.ext next to each input (remembered)")
    p.add_argument("--use-sopiuid", action=argparse.BooleanOptionalAction, default=None,
                   help="Name outputs after their SOP Instance UID (remembered)")
    p.add_argument("--force-ivrle", action="store_true",
                   help="Write Implicit VR Little Endian")
    p.add_argument("--script", help="Anonymizer script file")
    p.add_argument("--lookup", help="Lookup table properties file")
    p.add_argument("--integer-table", help="SQLite integer pseudonym table")
    p.set_defaults(func=cmd_anonymize)

    p = sub.add_parser("fix-vrs", help="Re-decode elements stored with the wrong VR")
    _add_selection_args(p)
    p.set_defaults(func=cmd_fix_vrs)

    p = sub.add_parser("clear-preamble", help="Zero the 128-byte preamble")
    _add_selection_args(p)
    p.set_defaults(func=cmd_clear_preamble)

    p = sub.add_parser("set-patient-ids",
                       help="Set PatientID from the first directory below the root")
    _add_selection_args(p, recursive=False)
    p.set_defaults(func=cmd_set_patient_ids)

    p = sub.add_parser("script", help="View or edit the anonymizer script")
    p.add_argument("--script", help="Anonymizer script file")
    actions = p.add_subparsers(dest="action", required=True)
    a = actions.add_parser("list", help="Show the directives")
    a.add_argument("--checked", action="store_true", help="Show only directives in effect")
    a = actions.add_parser("set", help="Set (or add) a directive's body")
    a.add_argument("kind", choices=KINDS)
    a.add_argument("key")
    a.add_argument("body")
    a.add_argument("--label", help=f"Label for a new '{ELEMENT}' directive")
    for name in ("enable", "disable"):
        a = actions.add_parser(name, help=f"{name.capitalize()} a directive")
        a.add_argument("kind", choices=[k for k in KINDS if k != PARAM])
        a.add_argument("key")
    actions.add_parser("uncheck-all", help="Disable every e, r and k directive")
    p.set_defaults(func=cmd_script)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = load_app_config(args.config)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else cfg.log_level,
        format=cfg.log_format,
    )

    try:
        return args.func(args, cfg)
    except ScriptSaveError as exc:
        print(codec.SAVE_FAILURE_WARNING, file=sys.stderr)
        print(exc, file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except (DicomEditorError, ValueError) as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
