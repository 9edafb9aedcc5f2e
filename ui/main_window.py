from __future__ import annotations
import asyncio
import logging
from pathlib import Path
from typing import Optional, Tuple
from PIL import Image

from PySide6.QtCore import Qt
from PySide6.QtGui import QAction, QImage, QKeySequence, QIcon, QPixmap
from PySide6.QtWidgets import (
    QMainWindow, QWidget, QFileDialog, QVBoxLayout, QHBoxLayout, QLabel,
    QSpinBox, QSlider, QCheckBox, QPushButton, QMessageBox, QDockWidget, QComboBox,
    QGroupBox, QScrollArea, QLineEdit, QListWidget, QListWidgetItem
)

from core import compositor
from core.errors import StudioError
from core.export import ExportOptions
from core.io import load_raster, save_bytes
from core.raster import Raster
from core.service import Suggestion
from core.session import EditorSession, OperationResult, TOOL_POINT, TOOL_BRUSH, TOOL_ERASE
from ui.canvas_widget import CanvasWidget


logger = logging.getLogger(__name__)


def pil_rgba_to_qimage(img: Image.Image) -> QImage:
    img = img.convert("RGBA")
    w, h = img.size
    data = img.tobytes("raw", "RGBA")
    qimg = QImage(data, w, h, QImage.Format_RGBA8888)
    # Important: keep a copy because Python-owned bytes may be freed
    return qimg.copy()


class MainWindow(QMainWindow):
    def __init__(self, session: EditorSession, logo_path: Optional[Path] = None):
        super().__init__()
        self._logo_path = logo_path or Path(__file__).resolve().parent.parent / "assets" / "Logo.png"
        if self._logo_path.exists():
            self.setWindowIcon(QIcon(str(self._logo_path)))
        self.setWindowTitle("Overlay Studio")

        self.session = session
        self.session.lifecycle.add_release_listener(self._on_raster_released)
        # Flattened preview of the entry it was rendered from.
        self._preview_key: Optional[Tuple[str, ...]] = None
        self._preview_qimg: Optional[QImage] = None
        self._tasks: set = set()

        self._act_undo: Optional[QAction] = None
        self._act_redo: Optional[QAction] = None

        # Central
        self.canvas = CanvasWidget(
            on_point=self._on_canvas_point,
            on_stroke_start=self._on_stroke_start,
            on_stroke_move=self._on_stroke_move,
            on_stroke_end=self._on_stroke_end,
        )
        self.canvas.brush_radius = self.session.brush_radius
        self.canvas.setAcceptDrops(True)

        central = QWidget()
        lay = QVBoxLayout()
        lay.addWidget(self.canvas)
        central.setLayout(lay)
        self.setCentralWidget(central)

        # Menu
        self._build_menu()

        # Right-side controls dock
        self._build_controls_dock()

        self.setAcceptDrops(True)
        self.resize(1200, 800)
        self._rerender()

    # ---------------------------
    # Menu / Actions
    # ---------------------------
    def _build_menu(self) -> None:
        open_act = QAction("Open…", self)
        open_act.setShortcut(QKeySequence.StandardKey.Open)
        open_act.triggered.connect(self.open_file)

        export_act = QAction("Export…", self)
        export_act.setShortcut(QKeySequence.StandardKey.SaveAs)
        export_act.triggered.connect(self.export_file)

        self._act_undo = QAction("Undo", self)
        self._act_undo.setShortcut(QKeySequence.StandardKey.Undo)
        self._act_undo.triggered.connect(self._undo)

        self._act_redo = QAction("Redo", self)
        self._act_redo.setShortcut(QKeySequence.StandardKey.Redo)
        self._act_redo.triggered.connect(self._redo)

        revert_act = QAction("Revert to Original", self)
        revert_act.triggered.connect(self._revert)

        start_over_act = QAction("Start Over", self)
        start_over_act.triggered.connect(self._start_over)

        reset_view = QAction("Reset View", self)
        reset_view.triggered.connect(self.canvas.reset_view)

        fit_act = QAction("Fit Image to Window", self)
        fit_act.setShortcut("F")
        fit_act.triggered.connect(self.canvas.fit_to_view)

        quit_act = QAction("Quit", self)
        quit_act.setShortcut(QKeySequence.StandardKey.Quit)
        quit_act.triggered.connect(self.close)

        mfile = self.menuBar().addMenu("File")
        mfile.addAction(open_act)
        mfile.addAction(export_act)
        mfile.addSeparator()
        mfile.addAction(quit_act)

        medit = self.menuBar().addMenu("Edit")
        medit.addAction(self._act_undo)
        medit.addAction(self._act_redo)
        medit.addSeparator()
        medit.addAction(revert_act)
        medit.addAction(start_over_act)

        mview = self.menuBar().addMenu("View")
        mview.addAction(reset_view)
        mview.addAction(fit_act)

    # ---------------------------
    # Controls dock
    # ---------------------------
    def _build_controls_dock(self) -> None:
        dock = QDockWidget("Controls", self)
        dock.setAllowedAreas(Qt.LeftDockWidgetArea | Qt.RightDockWidgetArea)

        scroll = QScrollArea()
        scroll.setWidgetResizable(True)
        panel = QWidget()
        v = QVBoxLayout(panel)

        if self._logo_path.exists():
            logo_label = QLabel()
            logo_label.setAlignment(Qt.AlignCenter)
            logo_pm = QPixmap(str(self._logo_path))
            if not logo_pm.isNull():
                logo_label.setPixmap(logo_pm.scaled(180, 64, Qt.KeepAspectRatio, Qt.SmoothTransformation))
                v.addWidget(logo_label)

        g_edit, gl_edit = self._make_group("Edit")
        tool_row = QHBoxLayout()
        tool_row.addWidget(QLabel("Tool"))
        self.tool_combo = QComboBox()
        self.tool_combo.addItem("Point", userData=TOOL_POINT)
        self.tool_combo.addItem("Brush", userData=TOOL_BRUSH)
        self.tool_combo.addItem("Eraser", userData=TOOL_ERASE)
        self.tool_combo.addItem("Crop", userData="crop")
        self.tool_combo.currentIndexChanged.connect(self._on_tool_changed)
        tool_row.addWidget(self.tool_combo, 1)
        gl_edit.addLayout(tool_row)
        brush_row = QHBoxLayout()
        brush_row.addWidget(QLabel("Brush"))
        self.brush_slider = QSlider(Qt.Horizontal)
        self.brush_slider.setRange(1, 150)
        self.brush_slider.setValue(int(self.session.brush_radius))
        self.brush_slider.valueChanged.connect(self._on_brush_changed)
        self.brush_val = QLabel(str(int(self.session.brush_radius)))
        self.brush_val.setMinimumWidth(40)
        self.brush_val.setAlignment(Qt.AlignRight | Qt.AlignVCenter)
        brush_row.addWidget(self.brush_slider, 1)
        brush_row.addWidget(self.brush_val, 0)
        gl_edit.addLayout(brush_row)
        self.prompt_edit = QLineEdit()
        self.prompt_edit.setPlaceholderText("Describe your edit…")
        self.prompt_edit.returnPressed.connect(self._generate)
        gl_edit.addWidget(self.prompt_edit)
        edit_btn_row = QHBoxLayout()
        self.generate_btn = QPushButton("Generate")
        self.generate_btn.clicked.connect(self._generate)
        edit_btn_row.addWidget(self.generate_btn)
        self.enhance_btn = QPushButton("Enhance Prompt")
        self.enhance_btn.clicked.connect(self._enhance_prompt)
        edit_btn_row.addWidget(self.enhance_btn)
        gl_edit.addLayout(edit_btn_row)
        self.remove_btn = QPushButton("Remove Painted Object")
        self.remove_btn.clicked.connect(self._remove_object)
        gl_edit.addWidget(self.remove_btn)
        self.crop_btn = QPushButton("Apply Crop")
        self.crop_btn.clicked.connect(self._apply_crop)
        gl_edit.addWidget(self.crop_btn)
        self.compare_btn = QPushButton("Hold to Compare")
        self.compare_btn.setToolTip("Show the original photo while pressed")
        self.compare_btn.pressed.connect(self._show_original)
        self.compare_btn.released.connect(self._rerender)
        gl_edit.addWidget(self.compare_btn)
        v.addWidget(g_edit)

        g_layers, gl_layers = self._make_group("Layers")
        self.layer_list = QListWidget()
        self.layer_list.itemClicked.connect(self._on_layer_clicked)
        gl_layers.addWidget(self.layer_list)
        layer_btn_row = QHBoxLayout()
        self.deselect_btn = QPushButton("Deselect")
        self.deselect_btn.clicked.connect(self._deselect_layer)
        layer_btn_row.addWidget(self.deselect_btn)
        self.delete_layer_btn = QPushButton("Delete Layer")
        self.delete_layer_btn.clicked.connect(self._delete_layer)
        layer_btn_row.addWidget(self.delete_layer_btn)
        gl_layers.addLayout(layer_btn_row)
        v.addWidget(g_layers)

        g_global, gl_global = self._make_group("Whole Photo")
        kind_row = QHBoxLayout()
        kind_row.addWidget(QLabel("Kind"))
        self.kind_combo = QComboBox()
        self.kind_combo.addItem("Adjustment", userData="adjustment")
        self.kind_combo.addItem("Filter", userData="filter")
        kind_row.addWidget(self.kind_combo, 1)
        gl_global.addLayout(kind_row)
        self.global_edit = QLineEdit()
        self.global_edit.setPlaceholderText("e.g. warm golden-hour lighting")
        self.global_edit.returnPressed.connect(self._apply_global_edit)
        gl_global.addWidget(self.global_edit)
        self.global_btn = QPushButton("Apply to Whole Photo")
        self.global_btn.clicked.connect(self._apply_global_edit)
        gl_global.addWidget(self.global_btn)
        self.suggest_btn = QPushButton("Get Suggestions")
        self.suggest_btn.clicked.connect(self._get_suggestions)
        gl_global.addWidget(self.suggest_btn)
        self.suggestion_list = QListWidget()
        self.suggestion_list.itemDoubleClicked.connect(self._on_suggestion_activated)
        gl_global.addWidget(self.suggestion_list)
        v.addWidget(g_global)

        g_export, gl_export = self._make_group("Export")
        fmt_row = QHBoxLayout()
        fmt_row.addWidget(QLabel("Format"))
        self.format_combo = QComboBox()
        self.format_combo.addItem("PNG", userData="png")
        self.format_combo.addItem("JPG", userData="jpeg")
        fmt_row.addWidget(self.format_combo, 1)
        fmt_row.addWidget(QLabel("Quality"))
        self.quality_spin = QSpinBox()
        self.quality_spin.setRange(1, 100)
        self.quality_spin.setValue(92)
        fmt_row.addWidget(self.quality_spin)
        gl_export.addLayout(fmt_row)
        self.watermark_chk = QCheckBox("Add watermark")
        gl_export.addWidget(self.watermark_chk)
        self.upscale_chk = QCheckBox("Upscale 2x before export")
        gl_export.addWidget(self.upscale_chk)
        self.export_btn = QPushButton("Export…")
        self.export_btn.clicked.connect(self.export_file)
        gl_export.addWidget(self.export_btn)
        v.addWidget(g_export)

        v.addStretch(1)
        scroll.setWidget(panel)
        dock.setWidget(scroll)
        self.addDockWidget(Qt.RightDockWidgetArea, dock)

        self._busy_widgets = [
            self.generate_btn, self.enhance_btn, self.remove_btn, self.crop_btn,
            self.delete_layer_btn, self.global_btn, self.suggest_btn, self.export_btn,
        ]

    def _make_group(self, title: str) -> tuple[QGroupBox, QVBoxLayout]:
        g = QGroupBox(title)
        gl = QVBoxLayout()
        g.setLayout(gl)
        return g, gl

    # ---------------------------
    # Async plumbing
    # ---------------------------
    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._set_busy_ui(True)

    async def _run_op(self, coro, title: str) -> Optional[OperationResult]:
        try:
            result = await coro
        finally:
            self._set_busy_ui(self.session.busy)
        if not result.ok:
            QMessageBox.warning(self, title, result.message)
        self._rerender()
        return result

    def _set_busy_ui(self, busy: bool) -> None:
        for w in self._busy_widgets:
            w.setEnabled(not busy)
        self._update_status(busy)

    # ---------------------------
    # File IO
    # ---------------------------
    def open_file(self) -> None:
        path, _ = QFileDialog.getOpenFileName(
            self, "Open Image", "", "Images (*.png *.jpg *.jpeg *.bmp *.webp *.tif *.tiff)"
        )
        if not path:
            return
        self.load_path(path)

    def load_path(self, path: str) -> None:
        try:
            raster = load_raster(path)
        except (OSError, StudioError) as e:
            QMessageBox.critical(self, "Open failed", str(e))
            return
        logger.info("opened %s (%dx%d)", path, raster.width, raster.height)
        self._spawn(self._upload(raster))

    async def _upload(self, raster: Raster) -> None:
        result = await self._run_op(self.session.upload(raster), "Open failed")
        if result.ok:
            self.prompt_edit.clear()
            self.suggestion_list.clear()
            self.tool_combo.setCurrentIndex(0)
            self.canvas.fit_to_view()

    def export_file(self) -> None:
        if self.session.current() is None:
            QMessageBox.information(self, "Nothing to export", "Load an image first.")
            return
        try:
            options = ExportOptions(
                format=self.format_combo.currentData(),
                quality=self.quality_spin.value(),
                add_watermark=self.watermark_chk.isChecked(),
                upscale=self.upscale_chk.isChecked(),
            )
        except StudioError as e:
            QMessageBox.critical(self, "Export failed", str(e))
            return
        name_filter = "JPG (*.jpg *.jpeg)" if options.format == "jpeg" else "PNG (*.png)"
        suggested = f"overlay-studio-edit.{'jpg' if options.format == 'jpeg' else 'png'}"
        path, _ = QFileDialog.getSaveFileName(self, "Export", suggested, name_filter)
        if not path:
            return
        self._spawn(self._export(options, path))

    async def _export(self, options: ExportOptions, path: str) -> None:
        result = await self._run_op(self.session.export(options), "Export failed")
        if not result.ok:
            return
        try:
            save_bytes(path, result.value.data)
        except OSError as e:
            QMessageBox.critical(self, "Export failed", str(e))
            return
        self.statusBar().showMessage(f"Exported {path}", 5000)

    # ---------------------------
    # Drag & drop support
    # ---------------------------
    def dragEnterEvent(self, e) -> None:
        if e.mimeData().hasUrls():
            e.acceptProposedAction()

    def dropEvent(self, e) -> None:
        urls = e.mimeData().urls()
        if not urls:
            return
        path = urls[0].toLocalFile()
        if path:
            self.load_path(path)

    # ---------------------------
    # History
    # ---------------------------
    def _undo(self) -> None:
        if self.session.undo():
            self._rerender()

    def _redo(self) -> None:
        if self.session.redo():
            self._rerender()

    def _revert(self) -> None:
        if self.session.revert_to_original():
            self._rerender()

    def _start_over(self) -> None:
        if self.session.current() is None:
            return
        answer = QMessageBox.question(self, "Start Over", "Discard the photo and every edit?")
        if answer != QMessageBox.Yes:
            return
        self.session.start_over()
        self.prompt_edit.clear()
        self.suggestion_list.clear()
        self._rerender()

    def _update_undo_redo_actions(self) -> None:
        if self._act_undo is not None:
            self._act_undo.setEnabled(self.session.history.can_undo)
        if self._act_redo is not None:
            self._act_redo.setEnabled(self.session.history.can_redo)

    # ---------------------------
    # Tools and canvas input
    # ---------------------------
    def _on_tool_changed(self, index: int) -> None:
        tool = self.tool_combo.itemData(index)
        if tool == "crop":
            self.session.set_tool(TOOL_POINT)
            self.canvas.set_mode(CanvasWidget.MODE_CROP)
        else:
            self.session.set_tool(tool)
            self.canvas.set_mode(CanvasWidget.MODE_POINT if tool == TOOL_POINT else CanvasWidget.MODE_BRUSH)
        self._rerender()

    def _sync_tool_combo(self) -> None:
        if self.canvas.mode == CanvasWidget.MODE_CROP:
            return
        idx = self.tool_combo.findData(self.session.tool)
        if idx >= 0 and idx != self.tool_combo.currentIndex():
            self.tool_combo.blockSignals(True)
            self.tool_combo.setCurrentIndex(idx)
            self.tool_combo.blockSignals(False)
            self.canvas.set_mode(
                CanvasWidget.MODE_POINT if self.session.tool == TOOL_POINT else CanvasWidget.MODE_BRUSH
            )

    def _on_brush_changed(self, v: int) -> None:
        self.session.brush_radius = float(v)
        self.canvas.brush_radius = float(v)
        self.brush_val.setText(str(v))
        self.canvas.update()

    def _on_canvas_point(self, display_xy, displayed_size) -> None:
        try:
            native = self.session.set_hotspot(display_xy, displayed_size)
        except StudioError as e:
            QMessageBox.warning(self, "Hotspot", str(e))
            return
        self.canvas.set_hotspot(native)
        self.statusBar().showMessage(f"Hotspot at {native[0]}, {native[1]}", 3000)
        self._refresh_layers()

    def _on_stroke_start(self, display_xy, displayed_size) -> None:
        try:
            self.session.begin_stroke(display_xy, displayed_size)
        except StudioError as e:
            QMessageBox.warning(self, "Brush", str(e))
            return
        self._refresh_mask_overlay()

    def _on_stroke_move(self, display_xy, displayed_size) -> None:
        if self.session.mask is None or not self.session.mask.in_stroke:
            return
        self.session.continue_stroke(display_xy, displayed_size)
        self._refresh_mask_overlay()

    def _on_stroke_end(self) -> None:
        self.session.end_stroke()
        self._refresh_mask_overlay()
        self._update_status(self.session.busy)

    # ---------------------------
    # Edits
    # ---------------------------
    def _generate(self) -> None:
        self._spawn(self._run_op(self.session.generate(self.prompt_edit.text()), "Generate failed"))

    def _enhance_prompt(self) -> None:
        self._spawn(self._enhance(self.prompt_edit.text()))

    async def _enhance(self, text: str) -> None:
        try:
            enhanced = await self.session.enhance_prompt(text)
        finally:
            self._set_busy_ui(self.session.busy)
        if enhanced:
            self.prompt_edit.setText(enhanced)

    def _remove_object(self) -> None:
        self._spawn(self._run_op(self.session.remove_object(), "Remove failed"))

    def _apply_global_edit(self) -> None:
        kind = self.kind_combo.currentData()
        self._spawn(self._run_op(
            self.session.apply_global_edit(self.global_edit.text(), kind), f"Apply {kind} failed"
        ))

    def _apply_crop(self) -> None:
        region = self.canvas.crop_region()
        if region is None:
            QMessageBox.information(self, "Crop", "Switch to the crop tool and drag a region first.")
            return
        self._spawn(self._crop(region, self.canvas.displayed_size(), self.canvas.devicePixelRatioF()))

    async def _crop(self, region, displayed_size, pixel_ratio: float) -> None:
        result = await self._run_op(self.session.apply_crop(region, displayed_size, pixel_ratio), "Crop failed")
        if result.ok:
            self.tool_combo.setCurrentIndex(0)
            self.canvas.reset_view()

    def _get_suggestions(self) -> None:
        self._spawn(self._suggestions())

    async def _suggestions(self) -> None:
        result = await self._run_op(self.session.get_suggestions(), "Suggestions failed")
        if not result.ok:
            return
        self.suggestion_list.clear()
        for s in result.value:
            it = QListWidgetItem(s.title)
            it.setToolTip(s.prompt)
            it.setData(Qt.UserRole, s)
            self.suggestion_list.addItem(it)

    def _on_suggestion_activated(self, item: QListWidgetItem) -> None:
        suggestion: Suggestion = item.data(Qt.UserRole)
        self._spawn(self._run_op(self.session.apply_suggestion(suggestion), "Apply suggestion failed"))

    # ---------------------------
    # Layers
    # ---------------------------
    def _on_layer_clicked(self, item: QListWidgetItem) -> None:
        try:
            layer = self.session.select_layer(item.data(Qt.UserRole))
        except StudioError as e:
            QMessageBox.warning(self, "Layer", str(e))
            return
        self.prompt_edit.setText(layer.prompt)
        self._rerender()

    def _deselect_layer(self) -> None:
        self.session.deselect_layer()
        self._rerender()

    def _delete_layer(self) -> None:
        item = self.layer_list.currentItem()
        if item is None:
            QMessageBox.information(self, "Delete Layer", "Select a layer first.")
            return
        self._spawn(self._run_op(self.session.delete_layer(item.data(Qt.UserRole)), "Delete failed"))

    def _refresh_layers(self) -> None:
        self.layer_list.blockSignals(True)
        self.layer_list.clear()
        entry = self.session.current()
        if entry is not None:
            for i, layer in enumerate(entry.layers):
                it = QListWidgetItem(f"{i + 1}. {layer.prompt or '(untitled)'}")
                it.setData(Qt.UserRole, layer.id)
                self.layer_list.addItem(it)
                if layer.id == self.session.active_layer_id:
                    self.layer_list.setCurrentItem(it)
        self.layer_list.blockSignals(False)

    # ---------------------------
    # Rendering
    # ---------------------------
    def _on_raster_released(self, raster: Raster) -> None:
        if self._preview_key is not None and raster.resource_id in self._preview_key:
            self._preview_key = None
            self._preview_qimg = None

    def _flattened_qimage(self, entry) -> Optional[QImage]:
        try:
            img = compositor.flatten_to_image(entry.base, tuple(entry.layers))
        except StudioError as e:
            QMessageBox.critical(self, "Preview failed", str(e))
            return None
        return pil_rgba_to_qimage(img)

    def _show_original(self) -> None:
        original = self.session.history.original()
        if original is None:
            return
        qimg = self._flattened_qimage(original)
        if qimg is None:
            return
        self.canvas.set_preview(qimg)
        self.canvas.set_hotspot(None)
        self.canvas.set_mask_overlay(None)
        self.statusBar().showMessage("Showing original")

    def _rerender(self) -> None:
        entry = self.session.current()
        if entry is None:
            self._preview_key = None
            self._preview_qimg = None
        else:
            key = tuple(r.resource_id for r in entry.rasters())
            if key != self._preview_key:
                qimg = self._flattened_qimage(entry)
                if qimg is None:
                    return
                self._preview_qimg = qimg
                self._preview_key = key
        self.canvas.set_preview(self._preview_qimg)
        self.canvas.set_hotspot(self.session.hotspot)
        self._sync_tool_combo()
        self._refresh_mask_overlay()
        self._refresh_layers()
        self._update_undo_redo_actions()
        self._update_status(self.session.busy)

    def _refresh_mask_overlay(self) -> None:
        mask = self.session.mask
        if mask is None or mask.is_empty:
            self.canvas.set_mask_overlay(None)
            return
        self.canvas.set_mask_overlay(pil_rgba_to_qimage(Image.fromarray(mask.to_rgba())))

    def _update_status(self, busy: bool = False) -> None:
        entry = self.session.current()
        if entry is None:
            self.statusBar().showMessage("No image")
            return
        w, h = entry.base.size
        history = self.session.history
        msg = (
            f"Image: {w}x{h} | History: {history.pointer + 1}/{len(history)} | "
            f"Layers: {len(entry.layers)} | Tool: {self.session.tool}"
        )
        if self.session.has_mask():
            msg += f" | Mask: {self.session.mask.coverage() * 100:.1f}%"
        if busy:
            msg += " | Working…"
        self.statusBar().showMessage(msg)

    def closeEvent(self, e) -> None:
        for task in list(self._tasks):
            task.cancel()
        self.session.close()
        super().closeEvent(e)
