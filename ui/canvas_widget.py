from __future__ import annotations
from typing import Optional, Callable, Tuple

from PySide6.QtCore import Qt, QPoint, QPointF, QRectF
from PySide6.QtGui import (
    QPainter, QImage, QPixmap, QColor, QPen, QBrush
)
from PySide6.QtWidgets import QWidget

from core.coords import CoordinateMapper

DisplayCallback = Callable[[Tuple[float, float], Tuple[float, float]], None]


class CanvasWidget(QWidget):
    """
    Shows the flattened preview of the current history entry with view zoom/pan.
    Pointer events are reported in display coordinates (relative to the drawn
    image's top-left) together with the drawn size measured for that event:
      - left-click in point mode: on_point(display_xy, displayed_size)
      - left-drag in brush mode: on_stroke_start / on_stroke_move, then on_stroke_end()
      - left-drag in crop mode: rubber band, read back with crop_region()
      - wheel: view zoom, middle-drag: pan view
    """
    MODE_POINT = "point"
    MODE_BRUSH = "brush"
    MODE_CROP = "crop"

    def __init__(
        self,
        on_point: DisplayCallback,
        on_stroke_start: DisplayCallback,
        on_stroke_move: DisplayCallback,
        on_stroke_end: Callable[[], None],
        parent: Optional[QWidget] = None,
    ):
        super().__init__(parent)
        self.setMouseTracking(True)
        self.setFocusPolicy(Qt.StrongFocus)
        self.setMinimumSize(320, 240)

        self._preview: Optional[QImage] = None
        self._mask_overlay: Optional[QImage] = None
        self._native_size: Tuple[int, int] = (0, 0)

        # View transform
        self._view_zoom = 1.0
        self._view_pan_x = 0.0
        self._view_pan_y = 0.0

        self.mode = self.MODE_POINT
        self.brush_radius = 15.0
        self._dragging_mid = False
        self._dragging_stroke = False
        self._crop_anchor: Optional[QPointF] = None
        self._crop_rect: Optional[QRectF] = None
        self._hotspot: Optional[Tuple[int, int]] = None
        self._cursor_pos: Optional[QPointF] = None
        self._last_pos = QPoint()

        self._on_point = on_point
        self._on_stroke_start = on_stroke_start
        self._on_stroke_move = on_stroke_move
        self._on_stroke_end = on_stroke_end

    def set_preview(self, qimg: Optional[QImage]) -> None:
        self._preview = qimg
        self._native_size = (qimg.width(), qimg.height()) if qimg is not None else (0, 0)
        self.update()

    def set_mask_overlay(self, qimg: Optional[QImage]) -> None:
        self._mask_overlay = qimg
        self.update()

    def set_hotspot(self, native_xy: Optional[Tuple[int, int]]) -> None:
        self._hotspot = native_xy
        self.update()

    def hotspot_display(self) -> Optional[Tuple[float, float]]:
        """Marker position for the current zoom, remapped from the native hotspot."""
        if self._hotspot is None or self._preview is None:
            return None
        return CoordinateMapper.to_display(self._hotspot, self.displayed_size(), self._native_size)

    def set_mode(self, mode: str) -> None:
        self.mode = mode
        if mode != self.MODE_CROP:
            self._crop_rect = None
        self.setCursor(Qt.CrossCursor if mode == self.MODE_POINT else Qt.ArrowCursor)
        self.update()

    def reset_view(self) -> None:
        self._view_zoom = 1.0
        self._view_pan_x = 0.0
        self._view_pan_y = 0.0
        self.update()

    def fit_to_view(self) -> None:
        nw, nh = self._native_size
        if nw <= 0 or nh <= 0:
            return
        self._view_zoom = max(0.05, min(self.width() / nw, self.height() / nh) * 0.95)
        self._view_pan_x = 0.0
        self._view_pan_y = 0.0
        self.update()

    def displayed_size(self) -> Tuple[float, float]:
        nw, nh = self._native_size
        return (nw * self._view_zoom, nh * self._view_zoom)

    def crop_region(self) -> Optional[Tuple[float, float, float, float]]:
        if self._crop_rect is None:
            return None
        r = self._crop_rect.normalized()
        return (r.x(), r.y(), r.width(), r.height())

    def _image_rect(self) -> QRectF:
        draw_w, draw_h = self.displayed_size()
        cx = self.width() * 0.5 + self._view_pan_x
        cy = self.height() * 0.5 + self._view_pan_y
        return QRectF(cx - draw_w * 0.5, cy - draw_h * 0.5, draw_w, draw_h)

    def _widget_to_display_xy(self, pos: QPointF) -> Optional[Tuple[float, float]]:
        """
        Convert widget coords to display coords of the drawn image.
        Returns None if outside the image.
        """
        r = self._image_rect()
        if r.width() <= 0 or not r.contains(pos):
            return None
        return (pos.x() - r.left(), pos.y() - r.top())

    def paintEvent(self, _) -> None:
        p = QPainter(self)
        p.setRenderHint(QPainter.Antialiasing, True)

        # Background
        p.fillRect(self.rect(), QColor(30, 30, 30))

        if self._preview is None:
            p.setPen(QPen(QColor(220, 220, 220)))
            p.drawText(self.rect(), Qt.AlignCenter, "Drop a photo or File → Open…")
            return

        r = self._image_rect()
        self._draw_checkerboard(p, r, int(16 * self._view_zoom))
        p.drawPixmap(r.toRect(), QPixmap.fromImage(self._preview))
        if self._mask_overlay is not None:
            p.setOpacity(0.45)
            p.drawPixmap(r.toRect(), QPixmap.fromImage(self._mask_overlay))
            p.setOpacity(1.0)

        p.setPen(QPen(QColor(240, 240, 240), 1))
        p.drawRect(r)

        marker = self.hotspot_display()
        if marker is not None and self.mode == self.MODE_POINT:
            hx = r.left() + marker[0]
            hy = r.top() + marker[1]
            p.setPen(QPen(QColor(255, 255, 255), 2))
            p.setBrush(QBrush(QColor(34, 211, 238, 160)))
            p.drawEllipse(QPointF(hx, hy), 8, 8)

        if self._crop_rect is not None:
            cr = self._crop_rect.normalized().translated(r.topLeft())
            pen = QPen(QColor(255, 255, 255), 2)
            pen.setDashPattern([4, 4])
            p.setPen(pen)
            p.setBrush(Qt.NoBrush)
            p.drawRect(cr)

        if self.mode == self.MODE_BRUSH and self._cursor_pos is not None:
            p.setPen(QPen(QColor(255, 255, 255), 1))
            p.setBrush(Qt.NoBrush)
            p.drawEllipse(self._cursor_pos, self.brush_radius, self.brush_radius)

    def _draw_checkerboard(self, p: QPainter, r: QRectF, cell: int) -> None:
        if cell < 4:
            cell = 4
        c1 = QColor(60, 60, 60)
        c2 = QColor(90, 90, 90)

        x0 = int(r.left())
        y0 = int(r.top())
        x1 = int(r.right())
        y1 = int(r.bottom())

        for y in range(y0, y1, cell):
            for x in range(x0, x1, cell):
                use_c1 = ((x // cell) + (y // cell)) % 2 == 0
                p.fillRect(x, y, min(cell, x1 - x), min(cell, y1 - y), c1 if use_c1 else c2)

    def wheelEvent(self, e) -> None:
        delta = e.angleDelta().y()
        if delta == 0:
            return
        self.zoom_by(1.1 if delta > 0 else (1.0 / 1.1))
        e.accept()

    def zoom_by(self, factor: float) -> None:
        self._view_zoom = max(0.05, min(20.0, self._view_zoom * factor))
        # Any rubber band was drawn at the old zoom.
        self._crop_rect = None
        self.update()

    def mousePressEvent(self, e) -> None:
        pos = e.position()
        self._last_pos = pos.toPoint()

        if e.button() == Qt.MiddleButton:
            self._dragging_mid = True
            return
        if e.button() != Qt.LeftButton or self._preview is None:
            return

        display_xy = self._widget_to_display_xy(pos)
        if display_xy is None:
            return
        if self.mode == self.MODE_POINT:
            self._on_point(display_xy, self.displayed_size())
        elif self.mode == self.MODE_BRUSH:
            self._dragging_stroke = True
            self._on_stroke_start(display_xy, self.displayed_size())
        elif self.mode == self.MODE_CROP:
            self._crop_anchor = QPointF(*display_xy)
            self._crop_rect = QRectF(self._crop_anchor, self._crop_anchor)
            self.update()

    def mouseMoveEvent(self, e) -> None:
        pos = e.position()
        dx = pos.x() - self._last_pos.x()
        dy = pos.y() - self._last_pos.y()
        self._last_pos = pos.toPoint()
        self._cursor_pos = pos

        if self._dragging_mid:
            self._view_pan_x += dx
            self._view_pan_y += dy
            self._crop_rect = None
        elif self._dragging_stroke:
            display_xy = self._widget_to_display_xy(pos)
            if display_xy is not None:
                self._on_stroke_move(display_xy, self.displayed_size())
        elif self._crop_anchor is not None:
            r = self._image_rect()
            x = max(0.0, min(r.width(), pos.x() - r.left()))
            y = max(0.0, min(r.height(), pos.y() - r.top()))
            self._crop_rect = QRectF(self._crop_anchor, QPointF(x, y))
        self.update()

    def mouseReleaseEvent(self, e) -> None:
        if e.button() == Qt.LeftButton:
            if self._dragging_stroke:
                self._dragging_stroke = False
                self._on_stroke_end()
            self._crop_anchor = None
        elif e.button() == Qt.MiddleButton:
            self._dragging_mid = False

    def leaveEvent(self, _) -> None:
        self._cursor_pos = None
        self.update()
