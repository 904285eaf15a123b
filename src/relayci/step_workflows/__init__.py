from __future__ import annotations

from ..steps import StepRegistry
from .checkout import checkout_step
from .rust import cargo_step, clippy_check_step, toolchain_step
from .shell import shell_step


def register_builtin_steps(registry: StepRegistry) -> StepRegistry:
    registry.register("run", shell_step)
    registry.register("checkout", checkout_step, aliases=["actions/checkout"])
    registry.register("toolchain", toolchain_step, aliases=["actions-rs/toolchain", "dtolnay/rust-toolchain"])
    registry.register("cargo", cargo_step, aliases=["actions-rs/cargo"])
    registry.register("clippy-check", clippy_check_step, aliases=["actions-rs/clippy-check"])
    return registry


__all__ = ["register_builtin_steps", "shell_step", "checkout_step", "toolchain_step", "cargo_step", "clippy_check_step"]
