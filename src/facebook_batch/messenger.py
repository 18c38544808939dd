"""
Builders for Messenger Platform sub-requests.

Every function returns a ``BatchRequest`` ready to be pushed to a
``BatchQueue``. Options set to ``None`` are left out of the request body.
"""

from __future__ import annotations

import typing as t
from urllib.parse import urlencode

from facebook_batch.models import BatchRequest

Recipient = str | dict[str, t.Any]

PAGE_INBOX_APP_ID = 263902037430900


def _omit_none(options: dict[str, t.Any]) -> dict[str, t.Any]:
    return {key: value for key, value in options.items() if value is not None}


def _to_recipient(recipient: Recipient) -> dict[str, t.Any]:
    return {"id": recipient} if isinstance(recipient, str) else recipient


def _with_access_token(path: str, access_token: str | None, **query: t.Any) -> str:
    params = _omit_none({**query, "access_token": access_token})
    return f"{path}?{urlencode(query=params)}" if params else path


def send_request(body: dict[str, t.Any]) -> BatchRequest:
    return BatchRequest(method="POST", relative_url="me/messages", body=body)


def send_message(
    recipient: Recipient,
    message: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    """
    Build a Send API request.

    Parameters
    ----------
    recipient : Recipient
        PSID of the user, or a full recipient object.
    message : dict[str, typing.Any]
        Message object (``text`` or ``attachment``).
    **options : typing.Any
        Extra Send API fields such as ``messaging_type``, ``tag``,
        ``notification_type`` or ``quick_replies``. ``quick_replies`` is
        attached to the message.

    Returns
    -------
    BatchRequest
        ``POST me/messages`` sub-request.
    """
    options = _omit_none(options)
    quick_replies = options.pop("quick_replies", None)
    if quick_replies:
        message = {**message, "quick_replies": quick_replies}

    if "messaging_type" in options:
        messaging_type = options.pop("messaging_type")
    elif "tag" in options:
        messaging_type = "MESSAGE_TAG"
    else:
        messaging_type = "UPDATE"

    return send_request(
        {
            "messaging_type": messaging_type,
            "recipient": _to_recipient(recipient),
            "message": message,
            **options,
        }
    )


def send_text(recipient: Recipient, text: str, **options: t.Any) -> BatchRequest:
    return send_message(recipient, {"text": text}, **options)


def send_attachment(
    recipient: Recipient,
    attachment: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return send_message(recipient, {"attachment": attachment}, **options)


def _send_media(
    media_type: str,
    recipient: Recipient,
    media: str | dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    payload = {"url": media} if isinstance(media, str) else media
    return send_attachment(recipient, {"type": media_type, "payload": payload}, **options)


def send_audio(recipient: Recipient, audio: str | dict[str, t.Any], **options: t.Any) -> BatchRequest:
    return _send_media("audio", recipient, audio, **options)


def send_image(recipient: Recipient, image: str | dict[str, t.Any], **options: t.Any) -> BatchRequest:
    return _send_media("image", recipient, image, **options)


def send_video(recipient: Recipient, video: str | dict[str, t.Any], **options: t.Any) -> BatchRequest:
    return _send_media("video", recipient, video, **options)


def send_file(recipient: Recipient, file: str | dict[str, t.Any], **options: t.Any) -> BatchRequest:
    return _send_media("file", recipient, file, **options)


def send_template(
    recipient: Recipient,
    payload: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return send_attachment(recipient, {"type": "template", "payload": payload}, **options)


def send_button_template(
    recipient: Recipient,
    text: str,
    buttons: list[dict[str, t.Any]],
    **options: t.Any,
) -> BatchRequest:
    return send_template(
        recipient,
        {"template_type": "button", "text": text, "buttons": buttons},
        **options,
    )


def send_generic_template(
    recipient: Recipient,
    elements: list[dict[str, t.Any]],
    *,
    image_aspect_ratio: t.Literal["horizontal", "square"] = "horizontal",
    **options: t.Any,
) -> BatchRequest:
    return send_template(
        recipient,
        {
            "template_type": "generic",
            "elements": elements,
            "image_aspect_ratio": image_aspect_ratio,
        },
        **options,
    )


def send_list_template(
    recipient: Recipient,
    elements: list[dict[str, t.Any]],
    buttons: list[dict[str, t.Any]],
    *,
    top_element_style: t.Literal["large", "compact"] = "large",
    **options: t.Any,
) -> BatchRequest:
    """Deprecated by the Messenger Platform, kept for existing integrations."""
    return send_template(
        recipient,
        {
            "template_type": "list",
            "elements": elements,
            "buttons": buttons,
            "top_element_style": top_element_style,
        },
        **options,
    )


def send_open_graph_template(
    recipient: Recipient,
    elements: list[dict[str, t.Any]],
    **options: t.Any,
) -> BatchRequest:
    """Deprecated by the Messenger Platform, kept for existing integrations."""
    return send_template(
        recipient,
        {"template_type": "open_graph", "elements": elements},
        **options,
    )


def send_media_template(
    recipient: Recipient,
    elements: list[dict[str, t.Any]],
    **options: t.Any,
) -> BatchRequest:
    return send_template(recipient, {"template_type": "media", "elements": elements}, **options)


def _send_attributes_template(
    template_type: str,
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return send_template(recipient, {"template_type": template_type, **attributes}, **options)


def send_receipt_template(
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    """
    Build a receipt template message.

    ``attributes`` holds the receipt fields (``recipient_name``,
    ``order_number``, ``currency``, ``payment_method``, ``summary``...) and is
    merged into the template payload as is.
    """
    return _send_attributes_template("receipt", recipient, attributes, **options)


def send_airline_boarding_pass_template(
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return _send_attributes_template("airline_boardingpass", recipient, attributes, **options)


def send_airline_checkin_template(
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return _send_attributes_template("airline_checkin", recipient, attributes, **options)


def send_airline_itinerary_template(
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return _send_attributes_template("airline_itinerary", recipient, attributes, **options)


def send_airline_update_template(
    recipient: Recipient,
    attributes: dict[str, t.Any],
    **options: t.Any,
) -> BatchRequest:
    return _send_attributes_template("airline_update", recipient, attributes, **options)


def get_user_profile(
    user_id: str,
    *,
    fields: t.Sequence[str] | None = None,
    access_token: str | None = None,
) -> BatchRequest:
    return BatchRequest(
        method="GET",
        relative_url=_with_access_token(
            user_id,
            access_token,
            fields=",".join(fields) if fields else None,
        ),
    )


def send_sender_action(
    recipient: Recipient,
    action: str,
    **options: t.Any,
) -> BatchRequest:
    return send_request(
        {
            "recipient": _to_recipient(recipient),
            "sender_action": action,
            **_omit_none(options),
        }
    )


def typing_on(recipient: Recipient, **options: t.Any) -> BatchRequest:
    return send_sender_action(recipient, "typing_on", **options)


def typing_off(recipient: Recipient, **options: t.Any) -> BatchRequest:
    return send_sender_action(recipient, "typing_off", **options)


def mark_seen(recipient: Recipient, **options: t.Any) -> BatchRequest:
    return send_sender_action(recipient, "mark_seen", **options)


def pass_thread_control(
    recipient_id: str,
    target_app_id: int,
    metadata: str | None = None,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    """Hand the conversation over to another app of the Handover Protocol."""
    return BatchRequest(
        method="POST",
        relative_url="me/pass_thread_control",
        body=_omit_none(
            {
                "recipient": {"id": recipient_id},
                "target_app_id": target_app_id,
                "metadata": metadata,
                "access_token": access_token,
            }
        ),
    )


def pass_thread_control_to_page_inbox(
    recipient_id: str,
    metadata: str | None = None,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    return pass_thread_control(
        recipient_id,
        PAGE_INBOX_APP_ID,
        metadata,
        access_token=access_token,
    )


def _thread_control(
    action: str,
    recipient_id: str,
    metadata: str | None,
    access_token: str | None,
) -> BatchRequest:
    return BatchRequest(
        method="POST",
        relative_url=f"me/{action}",
        body=_omit_none(
            {
                "recipient": {"id": recipient_id},
                "metadata": metadata,
                "access_token": access_token,
            }
        ),
    )


def take_thread_control(
    recipient_id: str,
    metadata: str | None = None,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    return _thread_control("take_thread_control", recipient_id, metadata, access_token)


def request_thread_control(
    recipient_id: str,
    metadata: str | None = None,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    return _thread_control("request_thread_control", recipient_id, metadata, access_token)


def get_thread_owner(recipient_id: str, *, access_token: str | None = None) -> BatchRequest:
    """Resolve to the ``thread_owner`` object of the conversation."""
    return BatchRequest(
        method="GET",
        relative_url=_with_access_token(
            "me/thread_owner",
            access_token,
            recipient=recipient_id,
        ),
        response_access_path="data[0].thread_owner",
    )


def associate_label(
    user_id: str,
    label_id: int,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    return BatchRequest(
        method="POST",
        relative_url=f"{label_id}/label",
        body=_omit_none({"user": user_id, "access_token": access_token}),
    )


def dissociate_label(
    user_id: str,
    label_id: int,
    *,
    access_token: str | None = None,
) -> BatchRequest:
    return BatchRequest(
        method="DELETE",
        relative_url=f"{label_id}/label",
        body=_omit_none({"user": user_id, "access_token": access_token}),
    )


def get_associated_labels(user_id: str, *, access_token: str | None = None) -> BatchRequest:
    return BatchRequest(
        method="GET",
        relative_url=_with_access_token(f"{user_id}/custom_labels", access_token),
    )
