"""JOSS extension: numpy-backed statistics functions.

Adds ``mean``, ``var``, ``sd`` and ``median``, each variadic over numbers,
so they combine with iterated arguments::

    Type mean(i = 1(1)11: i).
"""

from __future__ import annotations

from typing import List

import numpy as np

from extensions import ExtensionAPI
from interpreter import Value, number, to_number


JOSS_EXTENSION_NAME = "stats"
JOSS_EXTENSION_API_VERSION = 1


def _sample(args: List[Value]) -> np.ndarray:
    return np.array([to_number(arg) for arg in args], dtype=np.float64)


def joss_register(ext: ExtensionAPI) -> None:
    ext.metadata(name=JOSS_EXTENSION_NAME, version="0.1.0")

    @ext.function("mean", 1, None, doc="Arithmetic mean")
    def _mean(interpreter, args, location) -> Value:
        return number(np.mean(_sample(args)))

    @ext.function("var", 1, None, doc="Population variance")
    def _var(interpreter, args, location) -> Value:
        return number(np.var(_sample(args)))

    @ext.function("sd", 1, None, doc="Population standard deviation")
    def _sd(interpreter, args, location) -> Value:
        return number(np.std(_sample(args)))

    @ext.function("median", 1, None)
    def _median(interpreter, args, location) -> Value:
        return number(np.median(_sample(args)))
