"""SessionInfo: catalogue of the named inputs/outputs of opened graphs.

A Model adds every session it opens; entries from later sub-graphs
augment (and on a name clash, replace) earlier ones. The table is
read-only for everything else.
"""

from .backends.base import Session, TensorSpec


class SessionInfo:
    """Name → TensorSpec tables for inputs and outputs across sessions."""

    def __init__(self) -> None:
        self._inputs: dict[str, TensorSpec] = {}
        self._outputs: dict[str, TensorSpec] = {}

    def add(self, session: Session) -> None:
        self._inputs.update(session.input_specs)
        self._outputs.update(session.output_specs)

    def has_input(self, name: str) -> bool:
        return name in self._inputs

    def has_output(self, name: str) -> bool:
        return name in self._outputs

    def get_input_names(self) -> list[str]:
        return list(self._inputs)

    def get_output_names(self) -> list[str]:
        return list(self._outputs)

    def get_input_data_type(self, name: str) -> str:
        return self._lookup(self._inputs, "input", name).dtype

    def get_output_data_type(self, name: str) -> str:
        return self._lookup(self._outputs, "output", name).dtype

    def get_input_shape(self, name: str) -> list[int]:
        """Concrete shape, with -1 for symbolic dims."""
        return _concrete(self._lookup(self._inputs, "input", name).shape)

    def get_output_shape(self, name: str) -> list[int]:
        return _concrete(self._lookup(self._outputs, "output", name).shape)

    def get_input_symbolic_shape(self, name: str) -> list[str]:
        """Symbol names per dim, "" for concrete dims."""
        return _symbolic(self._lookup(self._inputs, "input", name).shape)

    def get_output_symbolic_shape(self, name: str) -> list[str]:
        return _symbolic(self._lookup(self._outputs, "output", name).shape)

    @staticmethod
    def _lookup(table: dict[str, TensorSpec], kind: str, name: str) -> TensorSpec:
        try:
            return table[name]
        except KeyError:
            raise KeyError(f"Model has no {kind} named '{name}'") from None


def _concrete(shape: tuple) -> list[int]:
    return [d if isinstance(d, int) else -1 for d in shape]


def _symbolic(shape: tuple) -> list[str]:
    return [d if isinstance(d, str) else "" for d in shape]
