from revtracker.common.constants import TEXT_ENCODING


def decode_text(raw: bytes, errors: str = "strict") -> str:
    """
    Decode without any newline translation.
    `Path.read_text` would turn `\\r\\n` into `\\n`, which breaks the byte-exact round trip of the patches.
    """
    return raw.decode(TEXT_ENCODING, errors=errors)


def encode_text(text: str) -> bytes:
    return text.encode(TEXT_ENCODING)
