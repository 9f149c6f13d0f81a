from __future__ import annotations

import time
import zipfile
from pathlib import Path
from typing import Iterable, Optional


# Browser storage state holds live portal cookies.
_EXCLUDED_SUFFIXES = (".bak", ".db", ".db-wal", ".db-shm", ".env")
_EXCLUDED_PREFIXES = ("storage_state", ".env")


def _is_excluded(path: Path) -> bool:
    name = path.name.lower()
    return name.startswith(_EXCLUDED_PREFIXES) or name.endswith(_EXCLUDED_SUFFIXES)


def create_debug_bundle(
    *,
    debug_dir: str,
    log_file: str,
    out_dir: str = "data",
    label: str = "",
    extra_paths: Optional[Iterable[str]] = None,
) -> Path:
    """
    Create a shareable zip containing portal debug captures (screenshots, HTML, page text) + logs.

    Never includes secrets: .env files, the SQLite state and browser storage_state files are skipped even
    when they sit inside one of the bundled directories.
    """
    out_root = Path(out_dir)
    out_root.mkdir(parents=True, exist_ok=True)

    stamp = time.strftime("%Y%m%d_%H%M%S")
    tag = (label or "").strip().lower()
    tag_part = f"_{tag}" if tag else ""
    out_path = out_root / f"debug_bundle{tag_part}_{stamp}.zip"

    dbg = Path(debug_dir)
    log = Path(log_file)

    def _add_file(z: zipfile.ZipFile, file_path: Path, arcname: str) -> None:
        if _is_excluded(file_path):
            return
        try:
            if file_path.exists() and file_path.is_file():
                z.write(file_path, arcname=arcname)
        except OSError:
            # best-effort; a capture may disappear while bundling
            return

    with zipfile.ZipFile(out_path, "w", compression=zipfile.ZIP_DEFLATED) as z:
        _add_file(z, log, arcname=log.name)

        if dbg.exists() and dbg.is_dir():
            for p in sorted(dbg.rglob("*")):
                if not p.is_file():
                    continue
                rel = p.relative_to(dbg)
                _add_file(z, p, arcname=str(Path("debug") / rel))

        for raw in extra_paths or ():
            p = Path(raw)
            if p.is_file():
                _add_file(z, p, arcname=str(Path("extra") / p.name))
            elif p.is_dir():
                for f in sorted(p.rglob("*")):
                    if f.is_file():
                        rel = f.relative_to(p)
                        _add_file(z, f, arcname=str(Path("extra") / p.name / rel))

    return out_path
