"""tabcalc - deterministic formula calculation over named tables and scalars.

Usage::

    from tabcalc import Model
    from tabcalc.calc import calculate

    model = Model.from_dict({
        "tables": {
            "pl": {
                "revenue": [1000, 1200, 1500, 1800],
                "cogs": [300, 360, 450, 540],
                "gross_profit": "=revenue - cogs",
            },
        },
        "scalars": {"total_profit": "=SUM(pl.gross_profit)"},
    })
    result = calculate(model)
    result.raise_on_error()
    print(model.scalars["total_profit"].value)
"""

from tabcalc._model import Column, ColumnType, Model, Scalar, Scenario, Table, value_type

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "Column",
    "ColumnType",
    "Model",
    "Scalar",
    "Scenario",
    "Table",
    "value_type",
]
