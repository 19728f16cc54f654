"""
Transactional email through Resend's HTTP API.

Every sender returns {"success": bool, "error": str?} and never raises, so a
mail outage can't fail the request that triggered it.
"""

import os
import threading
import traceback

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

import config

RESEND_API_URL = 'https://api.resend.com/emails'
REQUEST_TIMEOUT = 10

TEMPLATE_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'templates', 'emails')
templates = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(['html']),
)


def render_email(template_name, **context):
    context.setdefault('app_url', config.APP_URL)
    return templates.get_template(template_name).render(**context)


def send_email(to, subject, html, reply_to=None):
    if not config.RESEND_API_KEY:
        print("⚠️ RESEND_API_KEY not set, skipping email notification")
        return {'success': False, 'error': 'Email service not configured'}

    payload = {
        'from': config.FROM_EMAIL,
        'to': [to] if isinstance(to, str) else list(to),
        'subject': subject,
        'html': html,
    }
    if reply_to:
        payload['reply_to'] = reply_to

    try:
        response = requests.post(
            RESEND_API_URL,
            json=payload,
            headers={'Authorization': f"Bearer {config.RESEND_API_KEY}"},
            timeout=REQUEST_TIMEOUT
        )
    except requests.RequestException as e:
        print(f"❌ Email send failed ({subject}): {e}")
        return {'success': False, 'error': str(e)}

    if not response.ok:
        print(f"❌ Email send failed ({subject}): HTTP {response.status_code} {response.text[:200]}")
        return {'success': False, 'error': f"HTTP {response.status_code}"}

    print(f"📧 Sent '{subject}' to {payload['to']}")
    return {'success': True, 'id': response.json().get('id')}


def send_new_ticket_notification(ticket_number, user_email, message_preview):
    html = render_email('new_ticket.html', ticket_number=ticket_number, user_email=user_email,
                        message_preview=message_preview)
    return send_email(config.ADMIN_EMAIL, f"New Help Ticket: {ticket_number}", html, reply_to=user_email)


def send_ticket_confirmation(ticket_number, user_email, user_message):
    html = render_email('ticket_confirmation.html', ticket_number=ticket_number, user_message=user_message)
    return send_email(user_email, f"We got your message! (Ticket {ticket_number})", html)


def send_admin_reply(ticket_number, user_email, admin_message):
    html = render_email('admin_reply.html', ticket_number=ticket_number, admin_message=admin_message)
    return send_email(user_email, f"Re: Your PicPip Help Request ({ticket_number})", html)


def send_magic_link_email(email, link, purpose='login', animation_id=None):
    html = render_email('magic_link.html', email=email, link=link, purpose=purpose, animation_id=animation_id)
    subject = 'Reset your PicPip password' if purpose == 'recovery' else 'Your PicPip sign-in link'
    return send_email(email, subject, html)


def send_in_background(fn, **kwargs):
    """Fire-and-forget on a daemon thread; failures are logged only."""
    def runner():
        try:
            result = fn(**kwargs)
            if not result.get('success'):
                print(f"⚠️ Background email {fn.__name__} did not send: {result.get('error')}")
        except Exception:
            print(f"❌ Background email {fn.__name__} crashed")
            traceback.print_exc()

    thread = threading.Thread(target=runner, daemon=True)
    thread.start()
    return thread
