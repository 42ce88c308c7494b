"""Small reference graphs and model directories built from them.

Used by the example script and the tests: a toy decoder (embedding,
one MLP block, LM head) with random weights, optionally split into a
two-graph pipeline. Numerics are meaningless; shapes and I/O names are
what real decoders declare.
"""

import json
from pathlib import Path

import numpy as np

from .config import CONFIG_FILENAME
from .ir import Graph, OpType

DEFAULT_VOCAB_SIZE = 32
DEFAULT_HIDDEN_SIZE = 16


def _weights(vocab_size: int, hidden_size: int, seed: int) -> dict[str, np.ndarray]:
    rng = np.random.default_rng(seed)
    return {
        "embed": rng.standard_normal((vocab_size, hidden_size)).astype(np.float32),
        "w_up": (rng.standard_normal((hidden_size, hidden_size)) * 0.1).astype(np.float32),
        "b_up": (rng.standard_normal(hidden_size) * 0.1).astype(np.float32),
        "lm_head": (rng.standard_normal((hidden_size, vocab_size)) * 0.1).astype(np.float32),
        "lm_bias": np.zeros(vocab_size, dtype=np.float32),
    }


def _add_embedding(g: Graph, w: dict[str, np.ndarray], hidden_size: int) -> str:
    g.add_input("input_ids", ("batch", "seq"), dtype="int64")
    g.add_constant("embed.weight", w["embed"])
    g.add_tensor("hidden_states", ("batch", "seq", hidden_size))
    g.add_node(OpType.EMBEDDING, ["input_ids", "embed.weight"], "hidden_states")
    return "hidden_states"


def _add_head(g: Graph, w: dict[str, np.ndarray], x: str,
              vocab_size: int, hidden_size: int, activation: OpType) -> str:
    g.add_constant("mlp.up.weight", w["w_up"])
    g.add_constant("mlp.up.bias", w["b_up"])
    g.add_constant("lm_head.weight", w["lm_head"])
    g.add_constant("lm_head.bias", w["lm_bias"])

    g.add_tensor("mlp.up", ("batch", "seq", hidden_size))
    g.add_node(OpType.MATMUL, [x, "mlp.up.weight"], "mlp.up")
    g.add_tensor("mlp.up_bias", ("batch", "seq", hidden_size))
    g.add_node(OpType.ADD, ["mlp.up", "mlp.up.bias"], "mlp.up_bias")
    g.add_tensor("mlp.act", ("batch", "seq", hidden_size))
    g.add_node(activation, ["mlp.up_bias"], "mlp.act")

    g.add_tensor("lm_head", ("batch", "seq", vocab_size))
    g.add_node(OpType.MATMUL, ["mlp.act", "lm_head.weight"], "lm_head")
    g.add_tensor("logits", ("batch", "seq", vocab_size))
    g.add_node(OpType.ADD, ["lm_head", "lm_head.bias"], "logits")
    return "logits"


def build_decoder_graph(vocab_size: int = DEFAULT_VOCAB_SIZE,
                        hidden_size: int = DEFAULT_HIDDEN_SIZE,
                        seed: int = 0,
                        activation: OpType = OpType.GELU) -> Graph:
    """input_ids (batch, seq) -> logits (batch, seq, vocab)."""
    w = _weights(vocab_size, hidden_size, seed)
    g = Graph()
    h = _add_embedding(g, w, hidden_size)
    g.outputs.append(_add_head(g, w, h, vocab_size, hidden_size, activation))
    return g


def build_pipeline_graphs(vocab_size: int = DEFAULT_VOCAB_SIZE,
                          hidden_size: int = DEFAULT_HIDDEN_SIZE,
                          seed: int = 0,
                          activation: OpType = OpType.GELU) -> tuple[Graph, Graph]:
    """The decoder split in two: (input_ids -> hidden_states, hidden_states -> logits)."""
    w = _weights(vocab_size, hidden_size, seed)
    embed = Graph()
    embed.outputs.append(_add_embedding(embed, w, hidden_size))

    head = Graph()
    head.add_input("hidden_states", ("batch", "seq", hidden_size))
    head.outputs.append(_add_head(head, w, "hidden_states", vocab_size, hidden_size, activation))
    return embed, head


def write_decoder_model(model_dir: str | Path, graph: Graph | None = None,
                        filename: str = "model.onnx",
                        compile_options: dict | None = None,
                        session_options: dict | None = None,
                        max_length: int = 0,
                        eos_token_id: list[int] | None = None) -> Path:
    """Write a graph plus genai_config.json for a `decoder` model."""
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    graph = graph or build_decoder_graph()
    graph.save(model_dir / filename)

    decoder: dict = {"filename": filename}
    if session_options is not None:
        decoder["session_options"] = session_options
    if compile_options is not None:
        decoder["compile_options"] = compile_options
    _write_config(model_dir, "decoder", decoder, graph, max_length, eos_token_id)
    return model_dir


def write_pipeline_model(model_dir: str | Path,
                         graphs: tuple[Graph, Graph] | None = None,
                         compile_options: dict[str, dict] | None = None,
                         session_options: dict | None = None,
                         max_length: int = 0,
                         eos_token_id: list[int] | None = None) -> Path:
    """Write a two-graph `decoder-pipeline` model ("embeddings", "head")."""
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)
    embed, head = graphs or build_pipeline_graphs()
    compile_options = compile_options or {}

    pipeline = []
    for model_id, graph in (("embeddings", embed), ("head", head)):
        filename = f"{model_id}.onnx"
        graph.save(model_dir / filename)
        entry: dict = {"filename": filename}
        if model_id in compile_options:
            entry["compile_options"] = compile_options[model_id]
        pipeline.append({model_id: entry})

    decoder: dict = {"pipeline": pipeline}
    if session_options is not None:
        decoder["session_options"] = session_options
    _write_config(model_dir, "decoder-pipeline", decoder, head, max_length, eos_token_id)
    return model_dir


def _write_config(model_dir: Path, model_type: str, decoder: dict, graph: Graph,
                  max_length: int, eos_token_id: list[int] | None) -> None:
    vocab_size = graph.tensors["logits"].shape[-1]
    document = {
        "model": {
            "type": model_type,
            "vocab_size": vocab_size,
            "bos_token_id": 0,
            "eos_token_id": eos_token_id or [],
            "pad_token_id": 0,
            "decoder": decoder,
        },
        "search": {"max_length": max_length, "batch_size": 1},
    }
    with open(model_dir / CONFIG_FILENAME, "w") as f:
        json.dump(document, f, indent=2)
