"""Dual numbers for directional (forward-over-reverse) differentiation.

A `Dual` carries a value and the derivative of that value along one direction.
Running the ordinary forward and reverse passes on duals instead of floats
turns the gradient into a Hessian-vector product:
the epsilon parts of the variable adjoints are ``H @ direction``.

The module functions (`exp`, `log`, ...) accept plain floats as well,
so the evaluation code is written once for both number types.
Float inputs go through numpy, which returns ``nan``/``inf`` outside the domain
instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class Dual:
    """Number ``value + epsilon * e`` with ``e**2 == 0``."""

    value: float
    epsilon: float = 0.0

    # Makes numpy scalars defer to the reflected operators below.
    __array_ufunc__ = None

    # Arithmetic

    def __add__(self, other):
        if isinstance(other, Dual):
            return Dual(self.value + other.value, self.epsilon + other.epsilon)
        return Dual(self.value + other, self.epsilon)

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, Dual):
            return Dual(self.value - other.value, self.epsilon - other.epsilon)
        return Dual(self.value - other, self.epsilon)

    def __rsub__(self, other):
        return Dual(other - self.value, -self.epsilon)

    def __mul__(self, other):
        if isinstance(other, Dual):
            return Dual(
                self.value * other.value,
                self.epsilon * other.value + self.value * other.epsilon,
            )
        return Dual(self.value * other, self.epsilon * other)

    __rmul__ = __mul__

    def __truediv__(self, other):
        if isinstance(other, Dual):
            quotient = np.divide(self.value, other.value)
            return Dual(
                quotient,
                np.divide(self.epsilon - quotient * other.epsilon, other.value),
            )
        return Dual(np.divide(self.value, other), np.divide(self.epsilon, other))

    def __rtruediv__(self, other):
        quotient = np.divide(other, self.value)
        return Dual(quotient, np.divide(-quotient * self.epsilon, self.value))

    def __pow__(self, other):
        return power(self, other)

    def __rpow__(self, other):
        return power(other, self)

    def __neg__(self):
        return Dual(-self.value, -self.epsilon)

    def __abs__(self):
        return Dual(abs(self.value), sign(self.value) * self.epsilon)

    # Comparisons look at the value only

    def __lt__(self, other):
        return self.value < value(other)

    def __le__(self, other):
        return self.value <= value(other)

    def __gt__(self, other):
        return self.value > value(other)

    def __ge__(self, other):
        return self.value >= value(other)


def value(x) -> float:
    """Value part of a dual, or the float itself."""
    return x.value if isinstance(x, Dual) else x


def epsilon(x) -> float:
    """Derivative part of a dual, zero for a float."""
    return x.epsilon if isinstance(x, Dual) else 0.0


def sign(x) -> float:
    """Sign of the value part (``0.0`` at zero)."""
    v = value(x)
    if v > 0:
        return 1.0
    if v < 0:
        return -1.0
    return 0.0


def _lift(f, df):
    """Build ``g`` with ``g(a + b e) = f(a) + df(a) * b e``."""

    def g(x):
        if isinstance(x, Dual):
            return Dual(f(x.value), df(x.value) * x.epsilon)
        return f(x)

    g.__name__ = f.__name__
    return g


sqrt = _lift(np.sqrt, lambda a: 0.5 / np.sqrt(a))
exp = _lift(np.exp, np.exp)
log = _lift(np.log, lambda a: np.divide(1.0, a))
sin = _lift(np.sin, np.cos)
cos = _lift(np.cos, lambda a: -np.sin(a))
tan = _lift(np.tan, lambda a: 1.0 + np.tan(a) ** 2)
atan = _lift(np.arctan, lambda a: 1.0 / (1.0 + a * a))
tanh = _lift(np.tanh, lambda a: 1.0 - np.tanh(a) ** 2)


def power(base, exponent):
    """``base ** exponent`` for any mix of floats and duals.

    The derivative with respect to the exponent uses ``log(base)``
    and is only formed when the exponent actually carries a direction.
    """
    if not isinstance(base, Dual) and not isinstance(exponent, Dual):
        return np.power(base, exponent)
    a, b = value(base), value(exponent)
    result = np.power(a, b)
    d = 0.0
    if epsilon(base) != 0.0:
        d = d + b * np.power(a, b - 1) * epsilon(base)
    if epsilon(exponent) != 0.0:
        d = d + result * np.log(a) * epsilon(exponent)
    return Dual(result, d)
