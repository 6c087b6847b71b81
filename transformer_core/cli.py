# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Command-line front end: build or load a model, run inference, print JSON.

Examples:
    python -m transformer_core --d-model 16 --heads 2 --layers 2 \
        --vocab-size 32 --max-seq-len 16 --ids "1 2 3" --probabilities
    python -m transformer_core --checkpoint ckpt/ --ids "5 6 7" --generate 10
"""

import argparse
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import numpy as np

from .config import ACTIVATION_NAMES, ARCHITECTURES, NORMS, POSITIONALS, TransformerConfig
from .model import build_model
from .params import ParameterStore, load_checkpoint, parameter_shapes, save_checkpoint

logger = logging.getLogger(__name__)

# argparse dest -> TransformerConfig field
_OVERRIDES = {
    "d_model": "d_model",
    "heads": "n_heads",
    "layers": "n_layers",
    "decoder_layers": "n_decoder_layers",
    "d_ff": "d_ff",
    "vocab_size": "vocab_size",
    "max_seq_len": "max_seq_len",
    "norm": "norm",
    "activation": "activation",
    "architecture": "architecture",
    "positional": "positional",
    "pad_token_id": "pad_token_id",
}


def parse_ids(text: str) -> List[int]:
    """'1 2 3' or '1,2,3' -> [1, 2, 3]."""
    try:
        return [int(tok) for tok in text.replace(",", " ").split()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"token ids must be integers: {text!r}") from None


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="transformer_core",
        description="Run a Transformer forward pass on token ids and print JSON.",
    )
    src = ap.add_mutually_exclusive_group()
    src.add_argument("--config", type=str, help="JSON file with TransformerConfig fields")
    src.add_argument("--checkpoint", type=str, help="directory holding params.npz + config.json")
    ap.add_argument("--seed", type=int, default=0, help="seed for random parameters")
    ap.add_argument("--d-model", dest="d_model", type=int)
    ap.add_argument("--heads", type=int)
    ap.add_argument("--layers", type=int)
    ap.add_argument("--decoder-layers", dest="decoder_layers", type=int)
    ap.add_argument("--d-ff", dest="d_ff", type=int)
    ap.add_argument("--vocab-size", dest="vocab_size", type=int)
    ap.add_argument("--max-seq-len", dest="max_seq_len", type=int)
    ap.add_argument("--norm", choices=NORMS)
    ap.add_argument("--activation", choices=ACTIVATION_NAMES)
    ap.add_argument("--architecture", choices=ARCHITECTURES)
    ap.add_argument("--positional", choices=POSITIONALS)
    ap.add_argument("--pad-token-id", dest="pad_token_id", type=int)
    ap.add_argument(
        "--ids",
        type=parse_ids,
        action="append",
        default=[],
        help="token ids of one sequence (repeat for a batch); target ids for seq2seq",
    )
    ap.add_argument("--src", type=parse_ids, action="append", default=[], help="seq2seq source ids")
    ap.add_argument("--probabilities", action="store_true", help="emit softmax instead of logits")
    ap.add_argument("--generate", type=int, default=0, help="number of tokens to generate")
    ap.add_argument("--start-token", dest="start_token", type=int, default=0)
    ap.add_argument("--temperature", type=float, default=1.0)
    ap.add_argument("--top-k", dest="top_k", type=int, default=0)
    ap.add_argument("--summary", action="store_true", help="print architecture and parameter counts")
    ap.add_argument("--save", type=str, help="write the parameters as a checkpoint")
    ap.add_argument("--log-level", dest="log_level", default="WARNING")
    return ap


def resolve_config(args: argparse.Namespace) -> TransformerConfig:
    """Defaults, then --config file, then individual flags."""
    values: Dict[str, Any] = {}
    if args.config:
        values.update(TransformerConfig.from_json(args.config).to_dict())
    for dest, field_name in _OVERRIDES.items():
        value = getattr(args, dest)
        if value is not None:
            values[field_name] = value
    return TransformerConfig.from_dict(values)


def summary(config: TransformerConfig, params: ParameterStore) -> Dict[str, Any]:
    return {
        "config": config.to_dict(),
        "tensors": len(parameter_shapes(config)),
        "parameters": params.num_parameters(),
    }


def run(args: argparse.Namespace) -> Optional[Dict[str, Any]]:
    if args.checkpoint:
        config, params = load_checkpoint(args.checkpoint)
    else:
        config = resolve_config(args)
        params = ParameterStore.random(config, seed=args.seed)
    model = build_model(config, params)

    if args.save:
        save_checkpoint(args.save, config, params)
    if args.summary:
        print(json.dumps(summary(config, params), indent=2))
    if not args.ids and not args.src:
        return None

    rng = np.random.default_rng(args.seed)
    output = "probabilities" if args.probabilities else "logits"
    if config.architecture == "seq2seq":
        if not args.src:
            raise SystemExit("seq2seq models need --src")
        if args.generate:
            generated = model.generate(
                args.src[0],
                args.start_token,
                args.generate,
                temperature=args.temperature,
                top_k=args.top_k,
                rng=rng,
            )
            return {"generated": generated}
        out = model.infer(args.src, args.ids or [[args.start_token]] * len(args.src), output=output)
    else:
        if args.generate:
            generated = model.generate(
                args.ids[0],
                args.generate,
                temperature=args.temperature,
                top_k=args.top_k,
                rng=rng,
            )
            return {"generated": generated}
        out = model.infer(args.ids, output=output)
    return {"output": output, "shape": list(out.shape), "values": out.tolist()}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.checkpoint:
        fixed = [dest for dest in _OVERRIDES if getattr(args, dest) is not None]
        if fixed:
            parser.error(f"--checkpoint fixes the architecture; drop {sorted(fixed)}")
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    try:
        result = run(args)
    except ValueError as err:
        # TransformerError is a ValueError; so are bad config values
        logger.error("%s: %s", type(err).__name__, err)
        return 2
    if result is None:
        if not args.summary and not args.save:
            print("Nothing to do. Pass --ids, --summary or --save.")
        return 0
    print(json.dumps(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
