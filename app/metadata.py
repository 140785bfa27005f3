"""
Checkout metadata passed through Stripe and echoed back on completion.

Sessions created by this service use the snake_case keys below. Older
sessions (and hand-made corrections) may carry camelCase spellings or only the
buyer's own user fields, so every logical field is resolved through an ordered
alias list; the first non-empty value wins.
"""

METADATA_ALIASES = {
    "transaction_id": ("tx_id", "txId"),
    "referral_code": ("referral_code", "referralCode"),
    "referred_user_id": ("referred_user_id", "referredUserId", "user_id", "userId"),
    "referred_user_name": ("referred_user_name", "referredUserName", "user_name", "userName"),
    "referred_user_email": ("referred_user_email", "referredUserEmail", "user_email", "userEmail"),
    "item_type": ("item_type", "itemType"),
    "item_id": ("item_id", "itemId"),
}


def metadata_value(metadata, field):
    if not metadata:
        return None
    for key in METADATA_ALIASES[field]:
        value = metadata.get(key)
        if value:
            return value
    return None


def build_checkout_metadata(tx, request) -> dict:
    return {
        "tx_id": tx.id,
        "user_id": request.user_id,
        "user_name": request.user_name,
        "user_email": request.user_email,
        "item_type": tx.item_type,
        "item_id": tx.item_id,
        "referral_code": request.referral_code,
        "referred_user_id": request.referred_user_id,
    }
