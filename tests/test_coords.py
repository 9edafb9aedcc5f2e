from __future__ import annotations

import unittest

from core.coords import CoordinateMapper
from core.errors import CoordinateError, InputError


class CoordinateMapperTests(unittest.TestCase):
    def test_scales_to_native(self) -> None:
        self.assertEqual(CoordinateMapper.to_native((50, 25), (250, 150), (500, 300)), (100, 50))

    def test_rounds_half_up(self) -> None:
        # 1.5 * 1 and 2.5 * 1 both round away from the lower pixel
        self.assertEqual(CoordinateMapper.to_native((1.5, 2.5), (10, 10), (10, 10)), (2, 3))

    def test_fraction_maps_to_same_fraction_at_any_zoom(self) -> None:
        native = (800, 600)
        for displayed in ((400, 300), (800, 600), (1600, 1200), (200, 150)):
            for f in (0.0, 0.25, 0.5, 0.75, 1.0):
                point = (f * displayed[0], f * displayed[1])
                self.assertEqual(
                    CoordinateMapper.to_native(point, displayed, native),
                    (round(f * native[0]), round(f * native[1])),
                )

    def test_non_uniform_scale(self) -> None:
        self.assertEqual(CoordinateMapper.to_native((10, 10), (100, 50), (200, 200)), (20, 40))

    def test_zero_display_dimension_fails_explicitly(self) -> None:
        with self.assertRaises(CoordinateError):
            CoordinateMapper.to_native((1, 1), (0, 100), (500, 300))
        with self.assertRaises(InputError):
            CoordinateMapper.to_native((1, 1), (100, 0), (500, 300))

    def test_to_display_inverts(self) -> None:
        self.assertEqual(CoordinateMapper.to_display((100, 50), (250, 150), (500, 300)), (50.0, 25.0))

    def test_rect_to_native(self) -> None:
        self.assertEqual(
            CoordinateMapper.rect_to_native((10, 20, 30, 40), (100, 100), (200, 400)),
            (20.0, 80.0, 60.0, 160.0),
        )

    def test_clamp(self) -> None:
        self.assertEqual(CoordinateMapper.clamp_to_native((-3, 900), (500, 300)), (0, 299))


if __name__ == "__main__":
    unittest.main()
