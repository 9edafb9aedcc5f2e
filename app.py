import argparse
import logging
import sys
from pathlib import Path

from PySide6 import QtAsyncio
from PySide6.QtCore import QTimer
from PySide6.QtGui import QIcon
from PySide6.QtWidgets import QApplication

from core.config import load_config
from core.service import GeminiEditService
from core.session import EditorSession
from ui.main_window import MainWindow


def _asset_path(*parts: str) -> Path:
    # PyInstaller onefile extracts bundled files under sys._MEIPASS.
    if getattr(sys, "frozen", False):
        return Path(getattr(sys, "_MEIPASS")) / Path(*parts)
    return Path(__file__).resolve().parent / Path(*parts)


def _parse_args(argv):
    parser = argparse.ArgumentParser(prog="overlay-studio", description="AI photo editing with undoable overlay layers.")
    parser.add_argument("image", nargs="?", help="photo to open on start")
    parser.add_argument("--config", help="JSON settings file")
    parser.add_argument("--verbose", action="store_true", help="log debug output")
    return parser.parse_known_args(argv)


def main() -> int:
    args, qt_args = _parse_args(sys.argv[1:])
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    cfg = load_config(args.config)
    session = EditorSession(GeminiEditService.from_config(cfg), cfg)

    app = QApplication([sys.argv[0], *qt_args])
    app.setApplicationName("Overlay Studio")
    app.setOrganizationName("Overlay Studio")

    logo_path = _asset_path("assets", "Logo.png")
    if logo_path.exists():
        app.setWindowIcon(QIcon(str(logo_path)))

    w = MainWindow(session, logo_path=logo_path)
    w.show()
    if args.image:
        # Uploads are coroutines, so wait for the loop to be running.
        QTimer.singleShot(0, lambda: w.load_path(args.image))
    QtAsyncio.run(handle_sigint=True)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
