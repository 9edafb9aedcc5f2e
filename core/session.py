from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from core import compositor
from core.config import StudioConfig
from core.coords import CoordinateMapper, Rect, Size
from core.errors import BusyError, InputError, StaleResultError, StudioError
from core.export import ExportOptions, ExportResult, render_export
from core.history import HistoryEntry, HistoryStore
from core.layers import Layer, LayerSet, new_layer_id
from core.lifecycle import ResourceLifecycle
from core.mask_buffer import MODE_ADD, MODE_ERASE, MaskBuffer
from core.raster import Raster
from core.service import EditService, Suggestion


logger = logging.getLogger(__name__)

TOOL_POINT = "point"
TOOL_BRUSH = "brush"
TOOL_ERASE = "erase"
TOOLS = (TOOL_POINT, TOOL_BRUSH, TOOL_ERASE)


@dataclass(frozen=True)
class OperationResult:
    operation: str
    ok: bool
    message: str = ""
    entry: Optional[HistoryEntry] = None
    value: Any = None


@dataclass(frozen=True)
class _Target:
    revision: int
    active_layer_id: Optional[str]


class EditorSession:
    """
    Owns the history and the transient edit state of one open photo.

    Mutating operations are coroutines guarded by a single busy flag, so at
    most one of them is in flight. Undo, redo and layer selection stay
    available while a request is running; a result that comes back after the
    target changed is discarded instead of being applied to the new target.
    """

    def __init__(
        self,
        service: EditService,
        config: Optional[StudioConfig] = None,
        lifecycle: Optional[ResourceLifecycle] = None,
    ):
        self.service = service
        self.config = config or StudioConfig()
        self.history = HistoryStore(lifecycle or ResourceLifecycle())

        self.active_layer_id: Optional[str] = None
        self.tool = TOOL_POINT
        self.hotspot: Optional[Tuple[int, int]] = None
        self.brush_radius = float(self.config.brush_radius)
        self.mask: Optional[MaskBuffer] = None
        self._busy = False

    # ---------------------------
    # State accessors
    # ---------------------------
    @property
    def lifecycle(self) -> ResourceLifecycle:
        return self.history.lifecycle

    @property
    def busy(self) -> bool:
        return self._busy

    def current(self) -> Optional[HistoryEntry]:
        return self.history.current()

    def native_size(self) -> Optional[Tuple[int, int]]:
        entry = self.current()
        return entry.base.size if entry is not None else None

    def active_layer(self) -> Optional[Layer]:
        entry = self.current()
        if entry is None:
            return None
        return entry.layers.get(self.active_layer_id)

    def _require_entry(self, message: str = "No image loaded to edit.") -> HistoryEntry:
        entry = self.current()
        if entry is None:
            raise InputError(message)
        return entry

    def _target(self) -> _Target:
        return _Target(self.history.revision, self.active_layer_id)

    def _ensure_fresh(self, target: _Target, produced: Sequence[Raster]) -> None:
        if self._target() == target:
            return
        for raster in produced:
            raster.release()
        raise StaleResultError("The image changed while the request was running; the result was discarded.")

    # ---------------------------
    # Operation boundary
    # ---------------------------
    def _failed(self, operation: str, err: StudioError) -> OperationResult:
        err.with_operation(operation)
        if isinstance(err, InputError):
            logger.warning("%s", err)
        else:
            logger.error("%s", err, exc_info=err)
        return OperationResult(operation=operation, ok=False, message=str(err))

    async def _run(self, operation: str, fn: Callable[..., Awaitable[Any]], *args) -> OperationResult:
        if self._busy:
            return self._failed(operation, BusyError("Another edit is still in progress."))
        self._busy = True
        try:
            value = await fn(*args)
        except StudioError as e:
            return self._failed(operation, e)
        finally:
            self._busy = False
        logger.info("%s done (history %d/%d)", operation, self.history.pointer + 1, len(self.history))
        return OperationResult(operation=operation, ok=True, entry=self.current(), value=value)

    def _push(self, base: Raster, layers: LayerSet = LayerSet()) -> HistoryEntry:
        entry = HistoryEntry(base=base, layers=layers)
        self.history.push(entry)
        self.hotspot = None
        self._drop_mask()
        return entry

    def _clear_edit_state(self) -> None:
        self.hotspot = None
        self.active_layer_id = None
        self._drop_mask()

    def _drop_mask(self) -> None:
        if self.mask is not None:
            self.mask.clear()

    async def _flattened(self, entry: HistoryEntry) -> Raster:
        return await asyncio.to_thread(compositor.flatten, entry.base, tuple(entry.layers))

    # ---------------------------
    # History navigation
    # ---------------------------
    async def upload(self, raster: Raster) -> OperationResult:
        return await self._run("upload", self._upload, raster)

    async def _upload(self, raster: Raster) -> None:
        released = self.history.reset()
        logger.debug("upload released %d rasters from the previous session", released)
        self._clear_edit_state()
        self.mask = None
        self.tool = TOOL_POINT
        self._push(raster)

    def undo(self) -> bool:
        moved = self.history.undo()
        if moved:
            self._clear_edit_state()
        return moved

    def redo(self) -> bool:
        moved = self.history.redo()
        if moved:
            self._clear_edit_state()
        return moved

    def revert_to_original(self) -> bool:
        moved = self.history.rewind()
        if moved:
            self._clear_edit_state()
        return moved

    def start_over(self) -> None:
        self.history.reset()
        self._clear_edit_state()
        self.mask = None
        self.tool = TOOL_POINT

    def close(self) -> None:
        self.history.reset()
        self.lifecycle.release_all()

    # ---------------------------
    # Selection, tools and masks
    # ---------------------------
    def set_tool(self, tool: str) -> None:
        if tool not in TOOLS:
            raise ValueError(f"unknown tool {tool!r}")
        self.tool = tool
        if tool == TOOL_POINT:
            self._drop_mask()
        else:
            self.hotspot = None

    def set_hotspot(self, display_point: Tuple[float, float], displayed_size: Size) -> Tuple[int, int]:
        entry = self._require_entry()
        native = CoordinateMapper.to_native(display_point, displayed_size, entry.base.size)
        self.hotspot = CoordinateMapper.clamp_to_native(native, entry.base.size)
        self.active_layer_id = None
        self._drop_mask()
        return self.hotspot

    def select_layer(self, layer_id: str) -> Layer:
        entry = self._require_entry()
        layer = entry.layers.get(layer_id)
        if layer is None:
            raise InputError(f"layer {layer_id} is not part of the current image")
        self.active_layer_id = layer_id
        self.hotspot = None
        self._drop_mask()
        self.tool = TOOL_BRUSH
        return layer

    def deselect_layer(self) -> None:
        if self.active_layer_id is not None:
            self.active_layer_id = None
            self._drop_mask()

    def _mask_for(self, entry: HistoryEntry) -> MaskBuffer:
        if self.mask is None or self.mask.size != entry.base.size:
            self.mask = MaskBuffer(*entry.base.size)
        return self.mask

    def _stroke_args(self, display_point, displayed_size) -> Tuple[MaskBuffer, Tuple[int, int], float, str]:
        if self.tool == TOOL_POINT:
            raise InputError("Switch to the brush or eraser to paint a mask.")
        entry = self._require_entry()
        native = CoordinateMapper.to_native(display_point, displayed_size, entry.base.size)
        scale = entry.base.width / float(displayed_size[0])
        mode = MODE_ERASE if self.tool == TOOL_ERASE else MODE_ADD
        return self._mask_for(entry), native, self.brush_radius * scale, mode

    def begin_stroke(self, display_point: Tuple[float, float], displayed_size: Size) -> None:
        mask, native, radius, mode = self._stroke_args(display_point, displayed_size)
        mask.begin_stroke(native, radius, mode)

    def continue_stroke(self, display_point: Tuple[float, float], displayed_size: Size) -> None:
        mask, native, radius, mode = self._stroke_args(display_point, displayed_size)
        mask.paint(native, radius, mode)

    def end_stroke(self) -> None:
        if self.mask is not None:
            self.mask.end_stroke()

    def has_mask(self) -> bool:
        return self.tool != TOOL_POINT and self.mask is not None and not self.mask.is_empty

    # ---------------------------
    # Mutating operations
    # ---------------------------
    async def generate(self, prompt: str) -> OperationResult:
        return await self._run("generate", self._generate, prompt)

    async def _generate(self, prompt: str) -> str:
        entry = self._require_entry()
        prompt = (prompt or "").strip()
        active = entry.layers.get(self.active_layer_id)
        if not prompt:
            raise InputError(
                "Please describe your changes to the layer." if active else "Please enter a description for your edit."
            )
        hotspot = self.hotspot if self.tool == TOOL_POINT else None
        mask = self.mask.export_raster() if self.has_mask() else None
        if hotspot is None and mask is None:
            raise InputError("Please select an area on the image to edit.")

        target = self._target()
        layer_raster = await asyncio.to_thread(self.service.edit, entry.base, prompt, hotspot, mask)
        self._ensure_fresh(target, [layer_raster])

        if active is not None:
            layers = LayerSet(tuple(
                layer.with_content(layer_raster, prompt) if layer.id == active.id else layer.cloned()
                for layer in entry.layers
            ))
            layer_id = active.id
        else:
            layer_id = new_layer_id()
            layers = entry.layers.cloned().append(Layer(layer_id, layer_raster, prompt))
        self._push(entry.base.clone(), layers)
        self.active_layer_id = layer_id
        return layer_id

    async def delete_layer(self, layer_id: str) -> OperationResult:
        return await self._run("delete layer", self._delete_layer, layer_id)

    async def _delete_layer(self, layer_id: str) -> None:
        entry = self._require_entry()
        if entry.layers.get(layer_id) is None:
            raise InputError(f"layer {layer_id} is not part of the current image")
        self._push(entry.base.clone(), entry.layers.cloned(skip=layer_id))
        if self.active_layer_id == layer_id:
            self.active_layer_id = None
            self.tool = TOOL_POINT

    async def remove_object(self) -> OperationResult:
        return await self._run("remove object", self._remove_object)

    async def _remove_object(self) -> None:
        entry = self.current()
        if entry is None or not self.has_mask():
            raise InputError("Please use the brush to select an area to remove.")
        mask = self.mask.export_raster()
        target = self._target()
        flat = await self._flattened(entry)
        try:
            result = await asyncio.to_thread(self.service.remove, flat, mask)
        finally:
            flat.release()
        self._ensure_fresh(target, [result])
        self._push(result)
        self._clear_edit_state()

    async def apply_global_edit(self, prompt: str, kind: str = "adjustment") -> OperationResult:
        return await self._run(f"apply {kind}", self._apply_global_edit, prompt, kind)

    async def apply_suggestion(self, suggestion: Suggestion) -> OperationResult:
        return await self.apply_global_edit(suggestion.prompt, "adjustment")

    async def _apply_global_edit(self, prompt: str, kind: str) -> None:
        entry = self._require_entry("No image loaded to apply an edit to.")
        prompt = (prompt or "").strip()
        if not prompt:
            raise InputError("Please describe the edit to apply.")
        target = self._target()
        flat = await self._flattened(entry)
        try:
            result = await asyncio.to_thread(self.service.global_edit, flat, prompt, kind)
        finally:
            flat.release()
        self._ensure_fresh(target, [result])
        self._push(result)
        self.active_layer_id = None

    async def apply_crop(
        self,
        region: Rect,
        displayed_size: Size,
        pixel_ratio: Optional[float] = None,
    ) -> OperationResult:
        return await self._run("crop", self._apply_crop, region, displayed_size, pixel_ratio)

    async def _apply_crop(self, region: Rect, displayed_size: Size, pixel_ratio: Optional[float]) -> Tuple[int, int]:
        entry = self._require_entry()
        ratio = self.config.device_pixel_ratio if pixel_ratio is None else pixel_ratio
        target = self._target()
        cropped = await asyncio.to_thread(
            compositor.apply_crop,
            entry.base,
            tuple(entry.layers),
            region,
            displayed_size,
            entry.base.size,
            ratio,
        )
        self._ensure_fresh(target, [cropped])
        # Crop changes the coordinate frame, so existing layers cannot follow.
        self._push(cropped)
        self.active_layer_id = None
        return cropped.size

    async def export(self, options: ExportOptions) -> OperationResult:
        return await self._run("export", self._export, options)

    async def _export(self, options: ExportOptions) -> ExportResult:
        entry = self._require_entry()
        flat = await self._flattened(entry)
        try:
            if options.upscale:
                upscaled = await asyncio.to_thread(self.service.upscale, flat)
                if upscaled.size != (flat.width * 2, flat.height * 2):
                    logger.warning("upscale returned %s, expected 2x of %s", upscaled.size, flat.size)
                flat.release()
                flat = upscaled
            return await asyncio.to_thread(render_export, flat, options, self.config.watermark_text)
        finally:
            flat.release()

    # ---------------------------
    # Non-mutating requests
    # ---------------------------
    async def get_suggestions(self) -> OperationResult:
        operation = "suggestions"
        try:
            entry = self._require_entry()
            suggestions: List[Suggestion] = await asyncio.to_thread(self.service.suggestions, entry.base)
        except StudioError as e:
            return self._failed(operation, e)
        return OperationResult(operation=operation, ok=True, entry=self.current(), value=suggestions)

    async def enhance_prompt(self, text: str) -> str:
        if not (text or "").strip():
            return ""
        return await asyncio.to_thread(self.service.enhance_prompt, text)
