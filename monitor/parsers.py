"""Row parsers: reduce a diagnostic query result to one number."""


def _to_number(value, value_map=None):
    if value_map and value is not None:
        key = value.decode() if isinstance(value, bytes) else str(value)
        if key in value_map:
            return float(value_map[key])
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    return float(value)


def _column_value(row, column):
    """Look up a column, tolerating case differences between server versions."""
    if column in row:
        return True, row[column]
    lowered = {k.lower(): v for k, v in row.items()}
    if column.lower() in lowered:
        return True, lowered[column.lower()]
    return False, None


def parse_scalar(rows, options):
    if not rows:
        return None
    first = rows[0]
    return _to_number(next(iter(first.values()), None), options.get("value_map"))


def parse_column(rows, options):
    """First row, first present column from `column` (str or list)."""
    if not rows:
        return None
    columns = options["column"]
    if isinstance(columns, str):
        columns = [columns]
    for column in columns:
        found, value = _column_value(rows[0], column)
        if found:
            return _to_number(value, options.get("value_map"))
    raise ValueError(f"none of columns {columns} in result")


def parse_status_variable(rows, options):
    """SHOW STATUS / SHOW VARIABLES style rows (Variable_name, Value)."""
    name = options.get("name")
    for row in rows:
        _, var_name = _column_value(row, "Variable_name")
        if name is None or str(var_name).lower() == name.lower():
            _, value = _column_value(row, "Value")
            return _to_number(value, options.get("value_map"))
    return None


def parse_row_count(rows, options):
    return float(len(rows))


def parse_column_sum(rows, options):
    column = options["column"]
    total = 0.0
    for row in rows:
        found, value = _column_value(row, column)
        if not found:
            raise ValueError(f"column {column} not in result")
        total += _to_number(value) or 0.0
    return total


PARSERS = {
    "scalar": parse_scalar,
    "column": parse_column,
    "status_variable": parse_status_variable,
    "row_count": parse_row_count,
    "column_sum": parse_column_sum,
}

REQUIRED_OPTIONS = {
    "column": ("column",),
    "column_sum": ("column",),
}


def get_parser(name):
    return PARSERS.get(name)
