"""Bytecode-level components: decoding, encoding and control-flow recovery."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - used only for type checkers
    from gdre.vm.assembler import Assembler, FunctionBuilder, FunctionRecord, Label, UnitBuilder
    from gdre.vm.cfg_builder import CFG, BasicBlock, CFGBuilder, Edge, LoopInfo
    from gdre.vm.disassembler import (
        Constant,
        ConstantPool,
        DecodedFunction,
        DecodedUnit,
        Disassembler,
        FunctionHeader,
        Instruction,
        format_listing,
    )
    from gdre.vm.lifter import BlockLifter, LiftedBlock
    from gdre.vm.reconstruct_controlflow import (
        ControlFlowReconstructor,
        ReconstructOptions,
        StructuredFunction,
        reconstruct,
    )

_EXPORTS = {
    "Assembler": "gdre.vm.assembler",
    "FunctionBuilder": "gdre.vm.assembler",
    "FunctionRecord": "gdre.vm.assembler",
    "Label": "gdre.vm.assembler",
    "UnitBuilder": "gdre.vm.assembler",
    "CFG": "gdre.vm.cfg_builder",
    "BasicBlock": "gdre.vm.cfg_builder",
    "CFGBuilder": "gdre.vm.cfg_builder",
    "Edge": "gdre.vm.cfg_builder",
    "LoopInfo": "gdre.vm.cfg_builder",
    "Constant": "gdre.vm.disassembler",
    "ConstantPool": "gdre.vm.disassembler",
    "DecodedFunction": "gdre.vm.disassembler",
    "DecodedUnit": "gdre.vm.disassembler",
    "Disassembler": "gdre.vm.disassembler",
    "FunctionHeader": "gdre.vm.disassembler",
    "Instruction": "gdre.vm.disassembler",
    "format_listing": "gdre.vm.disassembler",
    "BlockLifter": "gdre.vm.lifter",
    "LiftedBlock": "gdre.vm.lifter",
    "ControlFlowReconstructor": "gdre.vm.reconstruct_controlflow",
    "ReconstructOptions": "gdre.vm.reconstruct_controlflow",
    "StructuredFunction": "gdre.vm.reconstruct_controlflow",
    "reconstruct": "gdre.vm.reconstruct_controlflow",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    module = _EXPORTS.get(name)
    if module is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module), name)
