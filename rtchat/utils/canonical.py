import orjson


def dumps_text(d: dict) -> str:
    # websockets sends str as a text frame, bytes as binary
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS).decode("utf-8")


def loads(raw) -> object:
    if isinstance(raw, str):
        raw = raw.encode("utf-8")
    return orjson.loads(raw)
