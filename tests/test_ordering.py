"""Tests for subexpression scheduling."""

import pytest

from nlpeval import NonlinearExprData, call, order_subexpressions, subexpression, variable
from nlpeval.ordering import direct_subexpressions


def _nodes(tree):
    return NonlinearExprData.from_tree(tree).nodes


@pytest.mark.ordering
def test_direct_subexpressions_first_use_order():
    nodes = _nodes(call("+", subexpression(2), subexpression(0), subexpression(2)))
    assert direct_subexpressions(nodes) == [2, 0]


@pytest.mark.ordering
def test_dependencies_come_first():
    """s0 = x0 * x1, s1 = sin(s0), s2 = s1 + s0; main uses s2."""
    subs = [
        _nodes(call("*", variable(0), variable(1))),
        _nodes(call("sin", subexpression(0))),
        _nodes(call("+", subexpression(1), subexpression(0))),
    ]
    main = [_nodes(call("exp", subexpression(2)))]

    order, individual = order_subexpressions(main, subs)

    assert order == [0, 1, 2]
    assert individual == [[0, 1, 2]]


@pytest.mark.ordering
def test_unreachable_subexpressions_are_skipped():
    subs = [
        _nodes(call("*", variable(0), variable(1))),
        _nodes(call("cos", variable(2))),
        _nodes(call("sin", subexpression(0))),
    ]
    main = [_nodes(call("+", subexpression(2), variable(0))), _nodes(variable(1))]

    order, individual = order_subexpressions(main, subs)

    assert order == [0, 2]
    assert individual == [[0, 2], []]


@pytest.mark.ordering
def test_individual_orders_follow_global_order():
    subs = [
        _nodes(call("*", variable(0), variable(1))),
        _nodes(call("sin", variable(2))),
        _nodes(call("+", subexpression(1), subexpression(0))),
    ]
    main = [
        _nodes(call("*", subexpression(1), subexpression(0))),
        _nodes(call("exp", subexpression(0))),
        _nodes(subexpression(2)),
    ]

    order, individual = order_subexpressions(main, subs)

    position = {k: i for i, k in enumerate(order)}
    assert sorted(order) == [0, 1, 2]
    assert position[2] > position[0]
    assert position[2] > position[1]
    assert individual[1] == [0]
    assert set(individual[0]) == {0, 1}
    assert individual[2] == sorted([0, 1, 2], key=position.__getitem__)
    for deps in individual:
        assert deps == sorted(deps, key=position.__getitem__)


@pytest.mark.ordering
def test_cycle_raises():
    subs = [
        _nodes(call("sin", subexpression(1))),
        _nodes(call("cos", subexpression(0))),
    ]
    main = [_nodes(subexpression(0))]

    with pytest.raises(ValueError, match="references itself"):
        order_subexpressions(main, subs)


@pytest.mark.ordering
def test_no_subexpressions():
    order, individual = order_subexpressions([_nodes(variable(0))], [])
    assert order == []
    assert individual == [[]]
