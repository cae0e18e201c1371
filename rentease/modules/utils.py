import secrets


def generate_idempotency_key():
    return secrets.token_hex(16)


def mask_character(number_to_mask, num_chars_to_mask, mask_char="*"):
    if len(number_to_mask) <= num_chars_to_mask:
        return mask_char * len(number_to_mask)
    else:
        return mask_char * num_chars_to_mask + number_to_mask[
            num_chars_to_mask:]


def unwrap_envelope(payload):
    """
    Strip the API's ``{"data": ...}`` wrappers.

    Responses nest the record one or two levels deep
    (``{"data": {"data": {...}}}``) depending on the endpoint.
    """
    while isinstance(payload, dict) and "data" in payload:
        payload = payload["data"]
    return payload
