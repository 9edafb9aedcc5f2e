from __future__ import annotations

import asyncio
import io
import threading
import unittest
from types import SimpleNamespace

import numpy as np
from PIL import Image

from core.errors import ServiceError
from core.export import ExportOptions
from core.history import HistoryEntry
from core.layers import Layer, LayerSet
from core.raster import Raster
from core.service import Suggestion, parse_image_response
from core.session import TOOL_BRUSH, TOOL_POINT, EditorSession


def _photo(size=(500, 300)) -> Raster:
    return Raster.from_image(Image.new("RGBA", size, (40, 80, 120, 255)))


def _truncated_png(size=(500, 300)) -> bytes:
    noise = np.random.default_rng(11).integers(0, 256, (size[1], size[0], 4), dtype=np.uint8)
    data = Raster.from_array(noise).data
    return data[: len(data) // 2]


def _image_reply(data: bytes):
    part = SimpleNamespace(inline_data=SimpleNamespace(data=data, mime_type="image/png"))
    return SimpleNamespace(
        prompt_feedback=None,
        candidates=[SimpleNamespace(content=SimpleNamespace(parts=[part]), finish_reason=None)],
        text=None,
    )


class FakeEditService:
    """In-memory stand-in for the generative backend."""

    def __init__(self) -> None:
        self.calls = []
        self.fail_with = None
        self.suggestion_list = [Suggestion("Warm", "add warmth")]
        self.gate = None
        self.started = threading.Event()
        self.edit_reply = None

    def _maybe_block(self) -> None:
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.fail_with is not None:
            raise self.fail_with

    def edit(self, image, prompt, hotspot=None, mask=None):
        self.calls.append(("edit", image.size, prompt, hotspot, mask))
        self._maybe_block()
        if self.edit_reply is not None:
            return parse_image_response(self.edit_reply, "edit")
        arr = np.zeros((image.height, image.width, 4), dtype=np.uint8)
        x, y = hotspot or (0, 0)
        arr[max(0, y - 5):y + 5, max(0, x - 5):x + 5] = (255, 0, 0, 255)
        return Raster.from_array(arr)

    def global_edit(self, image, prompt, kind="adjustment"):
        self.calls.append(("global_edit", image.size, prompt, kind, image.to_array()))
        self._maybe_block()
        return Raster.from_image(Image.new("RGBA", image.size, (1, 2, 3, 255)))

    def remove(self, image, mask):
        self.calls.append(("remove", image.size, mask.size))
        self._maybe_block()
        return Raster.from_image(Image.new("RGBA", image.size, (9, 9, 9, 255)))

    def upscale(self, image):
        self.calls.append(("upscale", image.size))
        self._maybe_block()
        return Raster.from_image(Image.new("RGBA", (image.width * 2, image.height * 2), (5, 5, 5, 255)))

    def suggestions(self, image):
        self.calls.append(("suggestions", image.size))
        self._maybe_block()
        if not self.suggestion_list:
            raise ServiceError("The AI returned no valid suggestions.")
        return list(self.suggestion_list)

    def enhance_prompt(self, text):
        return text.upper()


class EditorSessionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.service = FakeEditService()
        self.session = EditorSession(self.service)

    async def _loaded(self, size=(500, 300)) -> Raster:
        photo = _photo(size)
        result = await self.session.upload(photo)
        self.assertTrue(result.ok, result.message)
        return photo

    async def _add_layer(self, prompt="add hat", point=(100, 50)) -> str:
        size = self.session.native_size()
        self.session.set_hotspot(point, size)
        result = await self.session.generate(prompt)
        self.assertTrue(result.ok, result.message)
        return result.value

    async def test_hat_scenario(self) -> None:
        await self._loaded()
        self.assertEqual(self.session.set_hotspot((100, 50), (500, 300)), (100, 50))
        result = await self.session.generate("add hat")
        self.assertTrue(result.ok, result.message)

        history = self.session.history
        self.assertEqual(len(history), 2)
        layers = history.current().layers
        self.assertEqual(len(layers), 1)
        layer_id = layers[0].id
        layer_bytes = layers[0].raster.data
        self.assertEqual(self.service.calls[0][3], (100, 50))

        self.assertTrue(self.session.undo())
        self.assertEqual(history.pointer, 0)
        self.assertEqual(len(history.current().layers), 0)

        self.assertTrue(self.session.redo())
        redone = history.current().layers
        self.assertEqual(len(redone), 1)
        self.assertEqual(redone[0].id, layer_id)
        self.assertEqual(redone[0].raster.data, layer_bytes)

    async def test_hotspot_maps_from_display_size(self) -> None:
        await self._loaded()
        self.assertEqual(self.session.set_hotspot((50, 25), (250, 150)), (100, 50))

    async def test_crop_twice_drops_layers(self) -> None:
        await self._loaded()
        await self._add_layer()
        first = await self.session.apply_crop((0, 0, 400, 200), (500, 300), pixel_ratio=1.0)
        self.assertTrue(first.ok, first.message)
        self.assertEqual(len(first.entry.layers), 0)
        self.assertEqual(first.entry.base.size, (400, 200))
        second = await self.session.apply_crop((0, 0, 100, 100), (400, 200), pixel_ratio=1.0)
        self.assertTrue(second.ok, second.message)
        self.assertEqual(len(second.entry.layers), 0)
        self.assertEqual(len(self.session.history), 4)

    async def test_delete_sole_layer(self) -> None:
        photo = await self._loaded()
        layer_id = await self._add_layer()
        with_layer = self.session.current()

        result = await self.session.delete_layer(layer_id)
        self.assertTrue(result.ok, result.message)
        current = self.session.current()
        self.assertEqual(len(current.layers), 0)
        self.assertEqual(current.base.data, photo.data)
        self.assertEqual(len(self.session.history), 3)

        self.session.undo()
        self.assertIs(self.session.current(), with_layer)
        self.assertEqual(self.session.current().layers.ids, (layer_id,))

    async def test_reediting_active_layer_keeps_id(self) -> None:
        await self._loaded()
        layer_id = await self._add_layer()
        self.session.select_layer(layer_id)
        self.assertEqual(self.session.tool, TOOL_BRUSH)
        self.session.begin_stroke((100, 50), (500, 300))
        self.session.end_stroke()

        result = await self.session.generate("add red hat")
        self.assertTrue(result.ok, result.message)
        layers = self.session.current().layers
        self.assertEqual(layers.ids, (layer_id,))
        self.assertEqual(layers[0].prompt, "add red hat")
        self.assertIsNotNone(self.service.calls[-1][4])

    async def test_second_point_edit_appends_on_top(self) -> None:
        await self._loaded()
        first = await self._add_layer("add hat")
        second = await self._add_layer("add scarf", (200, 200))
        self.assertEqual(self.session.current().layers.ids, (first, second))

    async def test_entries_never_share_rasters(self) -> None:
        await self._loaded()
        await self._add_layer()
        await self._add_layer("add scarf", (10, 10))
        seen = set()
        for entry in self.session.history.entries():
            for raster in entry.rasters():
                self.assertNotIn(raster.resource_id, seen)
                seen.add(raster.resource_id)

    async def test_input_errors_leave_history_untouched(self) -> None:
        result = await self.session.generate("add hat")
        self.assertFalse(result.ok)
        self.assertIn("No image loaded", result.message)

        await self._loaded()
        result = await self.session.generate("   ")
        self.assertFalse(result.ok)
        result = await self.session.generate("add hat")
        self.assertFalse(result.ok)
        self.assertIn("select an area", result.message)
        result = await self.session.remove_object()
        self.assertFalse(result.ok)
        self.assertEqual(len(self.session.history), 1)
        self.assertEqual(self.service.calls, [])

    async def test_service_error_pushes_nothing(self) -> None:
        await self._loaded()
        self.service.fail_with = ServiceError("Request was blocked. Reason: SAFETY.")
        self.session.set_hotspot((10, 10), (500, 300))
        result = await self.session.generate("add hat")
        self.assertFalse(result.ok)
        self.assertTrue(result.message.startswith("generate: "))
        self.assertIn("SAFETY", result.message)
        self.assertEqual(len(self.session.history), 1)
        self.assertFalse(self.session.busy)

    async def test_mask_edit_sends_native_sized_mask(self) -> None:
        await self._loaded()
        self.session.set_tool(TOOL_BRUSH)
        self.session.begin_stroke((10, 10), (250, 150))
        self.session.continue_stroke((60, 10), (250, 150))
        self.session.end_stroke()
        result = await self.session.generate("add bird")
        self.assertTrue(result.ok, result.message)
        mask = self.service.calls[-1][4]
        self.assertEqual(mask.size, (500, 300))
        self.assertIsNone(self.service.calls[-1][3])
        self.assertTrue(self.session.mask.is_empty)

    async def test_point_tool_clears_mask(self) -> None:
        await self._loaded()
        self.session.set_tool(TOOL_BRUSH)
        self.session.begin_stroke((10, 10), (500, 300))
        self.session.set_tool(TOOL_POINT)
        self.assertTrue(self.session.mask.is_empty)
        self.assertFalse(self.session.has_mask())

    async def test_undo_clears_mask_and_selection(self) -> None:
        await self._loaded()
        layer_id = await self._add_layer()
        self.session.select_layer(layer_id)
        self.session.begin_stroke((10, 10), (500, 300))
        self.session.undo()
        self.assertIsNone(self.session.active_layer_id)
        self.assertTrue(self.session.mask.is_empty)

    async def test_remove_object_flattens_and_drops_layers(self) -> None:
        await self._loaded()
        await self._add_layer()
        self.session.set_tool(TOOL_BRUSH)
        self.session.begin_stroke((100, 50), (500, 300))
        result = await self.session.remove_object()
        self.assertTrue(result.ok, result.message)
        self.assertEqual(len(result.entry.layers), 0)
        self.assertEqual(self.service.calls[-1], ("remove", (500, 300), (500, 300)))

    async def test_global_edit_receives_flattened_image(self) -> None:
        await self._loaded()
        await self._add_layer(point=(100, 50))
        result = await self.session.apply_global_edit("make it vintage", "filter")
        self.assertTrue(result.ok, result.message)
        _, size, prompt, kind, pixels = self.service.calls[-1]
        self.assertEqual((size, prompt, kind), ((500, 300), "make it vintage", "filter"))
        self.assertEqual(tuple(int(v) for v in pixels[50, 100]), (255, 0, 0, 255))
        self.assertEqual(len(result.entry.layers), 0)

    async def test_push_after_undo_releases_redo_branch(self) -> None:
        await self._loaded()
        await self._add_layer()
        doomed = self.session.current()
        self.session.undo()
        await self._add_layer("add scarf", (20, 20))
        self.assertEqual(len(self.session.history), 2)
        self.assertTrue(all(r.released for r in doomed.rasters()))
        self.assertTrue(all(not r.released for e in self.session.history.entries() for r in e.rasters()))

    async def test_upload_resets_previous_session(self) -> None:
        first = await self._loaded()
        await self._add_layer()
        await self.session.upload(_photo((20, 20)))
        self.assertTrue(first.released)
        self.assertEqual(len(self.session.history), 1)
        self.assertEqual(self.session.lifecycle.live_count, 1)

    async def test_stale_result_is_discarded(self) -> None:
        await self._loaded()
        await self._add_layer()
        self.service.gate = threading.Event()
        self.service.started.clear()
        self.session.set_hotspot((30, 30), (500, 300))
        task = asyncio.create_task(self.session.generate("add scarf"))
        while not self.service.started.is_set():
            await asyncio.sleep(0.01)

        self.assertTrue(self.session.busy)
        self.session.undo()
        self.service.gate.set()
        result = await task

        self.assertFalse(result.ok)
        self.assertIn("discarded", result.message)
        self.assertEqual(len(self.session.history), 2)
        self.assertEqual(self.session.history.pointer, 0)

    async def test_busy_gate_rejects_second_mutation(self) -> None:
        await self._loaded()
        self.service.gate = threading.Event()
        self.service.started.clear()
        task = asyncio.create_task(self.session.apply_global_edit("brighter"))
        while not self.service.started.is_set():
            await asyncio.sleep(0.01)

        blocked = await self.session.apply_crop((0, 0, 10, 10), (500, 300))
        self.assertFalse(blocked.ok)
        self.assertIn("in progress", blocked.message)

        self.service.gate.set()
        result = await task
        self.assertTrue(result.ok, result.message)
        self.assertEqual(len(self.session.history), 2)

    async def test_export_with_upscale_and_watermark(self) -> None:
        await self._loaded((64, 32))
        result = await self.session.export(ExportOptions(format="png", add_watermark=True, upscale=True))
        self.assertTrue(result.ok, result.message)
        export = result.value
        self.assertEqual(export.mime_type, "image/png")
        self.assertEqual(Image.open(io.BytesIO(export.data)).size, (128, 64))
        self.assertEqual(len(self.session.history), 1)
        self.assertEqual(self.session.lifecycle.live_count, 1)

    async def test_suggestions(self) -> None:
        await self._loaded()
        result = await self.session.get_suggestions()
        self.assertTrue(result.ok)
        self.assertEqual(result.value[0].title, "Warm")
        applied = await self.session.apply_suggestion(result.value[0])
        self.assertTrue(applied.ok, applied.message)

        self.service.suggestion_list = []
        result = await self.session.get_suggestions()
        self.assertFalse(result.ok)

    async def test_enhance_prompt(self) -> None:
        self.assertEqual(await self.session.enhance_prompt("  "), "")
        self.assertEqual(await self.session.enhance_prompt("add hat"), "ADD HAT")

    async def test_revert_and_start_over(self) -> None:
        await self._loaded()
        await self._add_layer()
        await self._add_layer("add scarf", (20, 20))
        self.assertTrue(self.session.revert_to_original())
        self.assertEqual(self.session.history.pointer, 0)
        self.assertTrue(self.session.history.can_redo)
        self.session.start_over()
        self.assertIsNone(self.session.current())
        self.assertEqual(self.session.lifecycle.live_count, 0)

    async def test_deselect_layer(self) -> None:
        await self._loaded()
        layer_id = await self._add_layer()
        self.session.select_layer(layer_id)
        self.assertEqual(self.session.tool, TOOL_BRUSH)
        self.session.deselect_layer()
        self.assertIsNone(self.session.active_layer())

    async def test_close_releases_everything(self) -> None:
        photo = await self._loaded()
        await self._add_layer()
        self.session.close()
        self.assertIsNone(self.session.current())
        self.assertEqual(self.session.lifecycle.live_count, 0)
        self.assertTrue(photo.released)

    async def test_truncated_model_image_is_not_pushed(self) -> None:
        await self._loaded()
        self.service.edit_reply = _image_reply(_truncated_png())
        self.session.set_hotspot((100, 50), (500, 300))
        result = await self.session.generate("add hat")
        self.assertFalse(result.ok)
        self.assertIn("unreadable image", result.message)
        self.assertEqual(len(self.session.history), 1)
        self.assertEqual(len(self.session.current().layers), 0)

    async def _with_unreadable_layer(self) -> HistoryEntry:
        await self._loaded()
        base = self.session.current().base.clone()
        broken = Layer("broken", Raster(_truncated_png(), 500, 300), "add hat")
        self.session.history.push(HistoryEntry(base=base, layers=LayerSet((broken,))))
        return self.session.current()

    async def test_unreadable_layer_aborts_only_that_operation(self) -> None:
        entry = await self._with_unreadable_layer()
        self.session.set_tool(TOOL_BRUSH)
        self.session.begin_stroke((100, 50), (500, 300))
        self.session.end_stroke()

        attempts = [
            ("crop", self.session.apply_crop((0, 0, 100, 100), (500, 300), pixel_ratio=1.0)),
            ("remove object", self.session.remove_object()),
            ("apply adjustment", self.session.apply_global_edit("warmer light")),
            ("export", self.session.export(ExportOptions())),
        ]
        for operation, coro in attempts:
            with self.subTest(operation=operation):
                result = await coro
                self.assertFalse(result.ok)
                self.assertTrue(result.message.startswith(f"{operation}: "), result.message)
                self.assertIn("unreadable", result.message)
                self.assertEqual(len(self.session.history), 2)
                self.assertEqual(self.session.history.pointer, 1)
                self.assertIs(self.session.current(), entry)
                self.assertFalse(self.session.busy)
        self.assertEqual(self.service.calls, [])


if __name__ == "__main__":
    unittest.main()
