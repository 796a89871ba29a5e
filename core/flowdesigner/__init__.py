"""
Flow designer core - the flow graph model and its execution simulator.

Build flows through GraphModel, check them with Validator and preview
their behavior with ExecutionEngine:

    from flowdesigner.graph import ExecutionEngine, GraphModel

    model = GraphModel.create("Order intake")
    ...
    trace = await ExecutionEngine().run(model.flow, {"orderId": "12345"})
"""

__version__ = "0.1.0"
