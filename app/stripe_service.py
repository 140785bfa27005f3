import stripe


def create_checkout_session(
    secret_key: str,
    currency: str,
    unit_amount: int,
    product_name: str,
    metadata: dict,
    success_url: str,
    cancel_url: str,
):
    return stripe.checkout.Session.create(
        api_key=secret_key,
        mode="payment",
        payment_method_types=["card"],
        line_items=[
            {
                "price_data": {
                    "currency": currency.lower(),
                    "unit_amount": unit_amount,
                    "product_data": {"name": product_name},
                },
                "quantity": 1,
            }
        ],
        # Stripe rejects null metadata values
        metadata={k: str(v) for k, v in metadata.items() if v},
        success_url=success_url,
        cancel_url=cancel_url,
    )


def retrieve_checkout_session(secret_key: str, session_id: str):
    return stripe.checkout.Session.retrieve(session_id, api_key=secret_key)


def construct_webhook_event(payload: bytes, signature: str, secret: str) -> dict:
    """
    Verify the Stripe-Signature header (including its timestamp tolerance)
    and return the event as a plain dict.

    Raises ValueError for an unparseable payload and
    stripe.SignatureVerificationError for a bad or stale signature.
    """
    event = stripe.Webhook.construct_event(payload, signature, secret)
    return event.to_dict()
