"""
Transactional email templates (Jinja strings) and the helpers that send them.

All helpers are best-effort: they log and return (ok, message) instead of raising,
so a mail outage never rolls back an order, enrollment or subscription.
"""
from __future__ import annotations

from urllib.parse import quote

from flask import current_app

from app.edify.mailer import send_template

_FOOTER_HTML = """
<p style="margin-top:30px;padding-top:20px;border-top:1px solid #ddd;color:#666;font-size:13px;">
Best regards,<br><strong>EdifyPub</strong><br><a href="{{ app_url }}">{{ app_url }}</a>
</p>"""

NEWSLETTER_WELCOME_TEXT = """Hi {{ name or "there" }},

Thanks for subscribing to the EdifyPub newsletter. You'll hear from us about new books,
courses and writing tips.

Unsubscribe any time: {{ unsubscribe_url }}
"""

NEWSLETTER_WELCOME_HTML = """<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">
<h2>Welcome to EdifyPub!</h2>
<p>Hi {{ name or "there" }},</p>
<p>Thanks for subscribing. You'll hear from us about new books, courses and writing tips.</p>
<p style="font-size:12px;color:#666;"><a href="{{ unsubscribe_url }}">Unsubscribe</a></p>
""" + _FOOTER_HTML + "</div>"

ENROLLMENT_TEXT = """Hi {{ user_name }},

Welcome to {{ course_title }}! Your enrollment is confirmed.

Start learning: {{ course_url }}
"""

ENROLLMENT_HTML = """<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">
<h2>Welcome to {{ course_title }}!</h2>
<p>Hi {{ user_name }}, your enrollment is confirmed.</p>
<p><a href="{{ course_url }}">Start learning</a></p>
""" + _FOOTER_HTML + "</div>"

COMPLETION_TEXT = """Congratulations {{ user_name }}!

You've completed {{ course_title }}. Well done.

Browse more courses: {{ courses_url }}
"""

COMPLETION_HTML = """<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">
<h2>Congratulations, {{ user_name }}!</h2>
<p>You've completed <strong>{{ course_title }}</strong>.</p>
<p><a href="{{ courses_url }}">Browse more courses</a></p>
""" + _FOOTER_HTML + "</div>"

PAYMENT_TEXT = """Hi {{ user_name }},

We received your payment for order {{ order_number }}.

{% for item in items %}- {{ item.title }} x{{ item.quantity }}: {{ currency }} {{ item.line_total }}
{% endfor %}
Total paid: {{ currency }} {{ total }}
Reference: {{ reference }}
"""

PAYMENT_HTML = """<div style="font-family:Arial,sans-serif;max-width:600px;margin:0 auto;">
<h2>Payment received</h2>
<p>Hi {{ user_name }}, we received your payment for order <strong>{{ order_number }}</strong>.</p>
{% if items %}<table style="width:100%;border-collapse:collapse;">
{% for item in items %}<tr><td>{{ item.title }} &times; {{ item.quantity }}</td><td style="text-align:right;">{{ currency }} {{ item.line_total }}</td></tr>
{% endfor %}</table>{% endif %}
<p><strong>Total paid: {{ currency }} {{ total }}</strong><br>Reference: {{ reference }}</p>
""" + _FOOTER_HTML + "</div>"

NEWSLETTER_TEXT = """{{ content_text }}

--
You received this email because you subscribed to the EdifyPub newsletter.
Unsubscribe: {{ unsubscribe_url }}
"""

NEWSLETTER_HTML = """{{ content | safe }}
<div style="margin-top:40px;padding-top:20px;border-top:1px solid #eee;text-align:center;color:#666;font-size:12px;">
<p>You received this email because you subscribed to the EdifyPub newsletter.</p>
<p><a href="{{ unsubscribe_url }}">Unsubscribe</a> | <a href="{{ app_url }}">Visit Website</a></p>
</div>"""


def _app_url() -> str:
    return (current_app.config.get("APP_URL") or "").rstrip("/")


def unsubscribe_url(email: str) -> str:
    return f"{_app_url()}/api/newsletter/unsubscribe?email={quote(email)}"


def send_newsletter_welcome(email: str, name: str | None) -> tuple[bool, str]:
    return send_template(
        email,
        "Welcome to the EdifyPub newsletter",
        NEWSLETTER_WELCOME_TEXT,
        NEWSLETTER_WELCOME_HTML,
        name=name,
        unsubscribe_url=unsubscribe_url(email),
        app_url=_app_url(),
    )


def send_enrollment_welcome(email: str, user_name: str, course_title: str, course_id: int) -> tuple[bool, str]:
    return send_template(
        email,
        f"Welcome to {course_title}!",
        ENROLLMENT_TEXT,
        ENROLLMENT_HTML,
        user_name=user_name,
        course_title=course_title,
        course_url=f"{_app_url()}/academy/courses/{course_id}",
        app_url=_app_url(),
    )


def send_course_completion(email: str, user_name: str, course_title: str) -> tuple[bool, str]:
    return send_template(
        email,
        f"Congratulations! You've completed {course_title}",
        COMPLETION_TEXT,
        COMPLETION_HTML,
        user_name=user_name,
        course_title=course_title,
        courses_url=f"{_app_url()}/academy/courses",
        app_url=_app_url(),
    )


def send_payment_confirmation(
    email: str,
    *,
    user_name: str,
    order_number: str,
    currency: str,
    total: str,
    reference: str | None,
    items: list[dict],
) -> tuple[bool, str]:
    return send_template(
        email,
        f"Payment received for order {order_number}",
        PAYMENT_TEXT,
        PAYMENT_HTML,
        user_name=user_name,
        order_number=order_number,
        currency=currency,
        total=total,
        reference=reference or "",
        items=items,
        app_url=_app_url(),
    )


def send_newsletter_issue(email: str, subject: str, content_html: str, content_text: str) -> tuple[bool, str]:
    return send_template(
        email,
        subject,
        NEWSLETTER_TEXT,
        NEWSLETTER_HTML,
        content=content_html,
        content_text=content_text,
        unsubscribe_url=unsubscribe_url(email),
        app_url=_app_url(),
    )
