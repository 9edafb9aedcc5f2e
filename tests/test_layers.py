from __future__ import annotations

import unittest

from PIL import Image

from core.layers import Layer, LayerSet
from core.raster import Raster


def _raster() -> Raster:
    return Raster.from_image(Image.new("RGBA", (2, 2), (0, 0, 0, 0)))


class LayerSetTests(unittest.TestCase):
    def test_append_preserves_insertion_order(self) -> None:
        layers = LayerSet()
        for name in ("a", "b", "c"):
            layers = layers.append(Layer(name, _raster(), name))
        self.assertEqual(layers.ids, ("a", "b", "c"))

    def test_mutators_return_new_sets(self) -> None:
        original = LayerSet((Layer("a", _raster(), "hat"),))
        grown = original.append(Layer("b", _raster(), "scarf"))
        self.assertEqual(len(original), 1)
        self.assertEqual(len(grown), 2)

    def test_replace_keeps_id_and_position(self) -> None:
        layers = LayerSet((Layer("a", _raster(), "hat"), Layer("b", _raster(), "scarf")))
        new_raster = _raster()
        updated = layers.replace("a", new_raster, "red hat")
        self.assertEqual(updated.ids, ("a", "b"))
        self.assertIs(updated.get("a").raster, new_raster)
        self.assertEqual(updated.get("a").prompt, "red hat")
        self.assertEqual(layers.get("a").prompt, "hat")

    def test_remove_then_append_moves_layer_to_top(self) -> None:
        a = Layer("a", _raster(), "hat")
        layers = LayerSet((a, Layer("b", _raster(), "scarf")))
        reordered = layers.remove("a").append(a)
        self.assertEqual(reordered.ids, ("b", "a"))

    def test_unknown_id(self) -> None:
        layers = LayerSet()
        self.assertIsNone(layers.get("missing"))
        with self.assertRaises(KeyError):
            layers.remove("missing")

    def test_duplicate_ids_rejected(self) -> None:
        a = Layer("a", _raster(), "hat")
        with self.assertRaises(ValueError):
            LayerSet((a, a))

    def test_cloned_gives_fresh_raster_handles(self) -> None:
        layers = LayerSet((Layer("a", _raster(), "hat"), Layer("b", _raster(), "scarf")))
        copy = layers.cloned(skip="b")
        self.assertEqual(copy.ids, ("a",))
        self.assertNotEqual(copy[0].raster.resource_id, layers[0].raster.resource_id)
        self.assertEqual(copy[0].raster.data, layers[0].raster.data)


if __name__ == "__main__":
    unittest.main()
