from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from typing import Iterator, Optional, Tuple

from core.raster import Raster


def new_layer_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class Layer:
    id: str
    raster: Raster
    prompt: str

    def with_content(self, raster: Raster, prompt: str) -> "Layer":
        return replace(self, raster=raster, prompt=prompt)

    def cloned(self) -> "Layer":
        return replace(self, raster=self.raster.clone())


class LayerSet:
    """
    Ordered, immutable collection of overlay layers.

    Composite order is list order: the last layer is drawn on top. Every
    mutator returns a new LayerSet.
    """

    __slots__ = ("_layers",)

    def __init__(self, layers: Tuple[Layer, ...] = ()):
        ids = [layer.id for layer in layers]
        if len(set(ids)) != len(ids):
            raise ValueError("duplicate layer id in LayerSet")
        self._layers: Tuple[Layer, ...] = tuple(layers)

    def __iter__(self) -> Iterator[Layer]:
        return iter(self._layers)

    def __len__(self) -> int:
        return len(self._layers)

    def __getitem__(self, index: int) -> Layer:
        return self._layers[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LayerSet):
            return NotImplemented
        return self._layers == other._layers

    def __hash__(self) -> int:
        return hash(self._layers)

    def __repr__(self) -> str:
        return f"LayerSet({[layer.id for layer in self._layers]})"

    @property
    def ids(self) -> Tuple[str, ...]:
        return tuple(layer.id for layer in self._layers)

    def rasters(self) -> Tuple[Raster, ...]:
        return tuple(layer.raster for layer in self._layers)

    def get(self, layer_id: Optional[str]) -> Optional[Layer]:
        for layer in self._layers:
            if layer.id == layer_id:
                return layer
        return None

    def index_of(self, layer_id: str) -> int:
        for i, layer in enumerate(self._layers):
            if layer.id == layer_id:
                return i
        raise KeyError(layer_id)

    def append(self, layer: Layer) -> "LayerSet":
        return LayerSet(self._layers + (layer,))

    def replace(self, layer_id: str, raster: Raster, prompt: str) -> "LayerSet":
        idx = self.index_of(layer_id)
        updated = self._layers[idx].with_content(raster, prompt)
        return LayerSet(self._layers[:idx] + (updated,) + self._layers[idx + 1:])

    def remove(self, layer_id: str) -> "LayerSet":
        idx = self.index_of(layer_id)
        return LayerSet(self._layers[:idx] + self._layers[idx + 1:])

    def cloned(self, skip: Optional[str] = None) -> "LayerSet":
        """Copy with fresh raster handles, so the result can belong to a new entry."""
        return LayerSet(tuple(layer.cloned() for layer in self._layers if layer.id != skip))
