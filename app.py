import os
import json
import uuid
import traceback

import click
import stripe
from flask import Flask, request, redirect, jsonify
from flask_cors import CORS

import config
from animations import (apply_runway_result, create_animation, get_animation, get_animation_by_runway_job,
                        list_animations, serialize_animation, trigger_animation)
from auth import (AuthError, admin_required, authenticate, confirm_email, create_user, current_user,
                  exchange_login_code, get_user, get_user_by_email, login_required, login_user, logout_user,
                  safe_next_path, send_magic_link, set_password)
from billing import (PRODUCTS, BillingError, construct_event, create_checkout_session, get_or_create_customer,
                     retrieve_checkout_session)
from credits import (CreditError, get_credits, handle_checkout_completed, handle_subscription_updated,
                     promote_guest_to_user, remember_customer, use_credit, verify_checkout)
from database import get_db_connection, init_db, row_to_dict, transaction, utcnow
from notifications import send_admin_reply, send_in_background, send_new_ticket_notification, send_ticket_confirmation
from ratelimit import CHECKOUT_LIMIT, RUNWAY_LIMIT, UPLOAD_LIMIT, global_key, limiter, ratelimit_handler
from runway_client import is_simulated_job
from s3_storage import save_bytes
from security import (INVALID_TYPE_ERROR, is_valid_email, is_valid_uuid, safe_extension,
                      validate_file_type, verify_hmac_signature)
from support import (MAX_MESSAGE_LENGTH, TICKET_STATUSES, TicketError, add_admin_reply, create_ticket, get_messages,
                     get_ticket, list_tickets, preview, update_status)
from video_processor import is_watermarking_enabled, make_thumbnail, watermark_video

app = Flask(__name__, static_folder=config.STATIC_FOLDER, static_url_path='/static')
app.secret_key = config.SECRET_KEY
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['SESSION_COOKIE_SECURE'] = config.PRODUCTION_MODE
# Leave room for the multipart envelope; the 10MB photo limit is checked on the file itself
app.config['MAX_CONTENT_LENGTH'] = config.MAX_UPLOAD_SIZE + 1024 * 1024
app.config['RATELIMIT_ENABLED'] = config.RATELIMIT_ENABLED

os.makedirs(config.UPLOADS_FOLDER, exist_ok=True)

CORS(app, resources={r"/api/*": {
    "origins": [config.APP_URL, "http://localhost:3000"],
    "methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    "max_age": 86400,
}}, supports_credentials=True)

limiter.init_app(app)
app.register_error_handler(429, ratelimit_handler)

if config.PRODUCTION_MODE:
    print("🚀 Running in PRODUCTION mode")
else:
    print("🔧 Running in DEVELOPMENT mode")


@app.errorhandler(413)
def file_too_large(e):
    return jsonify({"error": "File too large. Maximum size is 10MB."}), 400


def serialize_user(user):
    return {
        "id": user['id'],
        "email": user['email'],
        "credits": user['credits'],
        "subscriptionStatus": user['subscription_status'],
        "emailConfirmed": bool(user['email_confirmed']),
        "isAdmin": bool(user['is_admin']),
    }


def json_body():
    return request.get_json(silent=True) or {}


# --- CLI COMMANDS ---

@app.cli.command("init-db")
def init_db_command():
    """Creates the tables (and any missing columns)."""
    init_db()
    print("Initialized the database.")


@app.cli.command("reset-stuck")
def reset_stuck_command():
    """Fails animations stuck in processing without a Runway job."""
    try:
        with get_db_connection() as conn:
            result = conn.execute(
                "UPDATE animations SET status = 'failed', error_message = 'Reset by operator', updated_at = ? "
                "WHERE status = 'processing' AND runway_job_id IS NULL",
                (utcnow(),)
            )
            conn.commit()
            print(f"Reset {result.rowcount} stuck animations.")
    except Exception as e:
        print(f"Error resetting stuck animations: {e}")


@app.cli.command("make-admin")
@click.argument("email")
def make_admin_command(email):
    """Gives a user access to the support admin API."""
    with get_db_connection() as conn:
        count = conn.execute("UPDATE profiles SET is_admin = 1 WHERE email = ? COLLATE NOCASE", (email,)).rowcount
        conn.commit()
    print(f"✅ {email} is now an admin." if count else f"❌ No user with email {email}.")


@app.cli.command("grant-credits")
@click.argument("email")
@click.argument("amount", type=int)
def grant_credits_command(email, amount):
    """Adds credits to a user by hand (support refunds)."""
    with get_db_connection() as conn:
        user = get_user_by_email(conn, email)
        if not user:
            print(f"❌ No user with email {email}.")
            return
        with transaction(conn):
            conn.execute("UPDATE profiles SET credits = MAX(0, credits + ?) WHERE id = ?", (amount, user['id']))
        print(f"✅ {email} now has {get_credits(conn, user['id'])} credits.")


# --- UPLOADS & ANIMATIONS ---

@app.route("/api/upload", methods=["POST"])
@limiter.limit(UPLOAD_LIMIT)
def upload():
    try:
        photo = request.files.get('file')
        if photo is None or photo.filename == '':
            return jsonify({"error": "No file provided"}), 400

        data = photo.read()
        if len(data) > config.MAX_UPLOAD_SIZE:
            return jsonify({"error": "File too large. Maximum size is 10MB."}), 400

        if photo.mimetype not in config.ALLOWED_IMAGE_TYPES:
            return jsonify({"error": "Invalid file type. Please upload a JPEG, PNG, WebP, or GIF image."}), 400

        valid, detected_type, error = validate_file_type(data)
        if not valid:
            return jsonify({"error": error or INVALID_TYPE_ERROR}), 400

        guest_session_id = request.form.get('guestSessionId')
        if not guest_session_id:
            return jsonify({"error": "Guest session ID required"}), 400
        if not is_valid_uuid(guest_session_id):
            return jsonify({"error": "Invalid guest session ID format"}), 400

        animation_id = str(uuid.uuid4())
        base_key = f"{config.UPLOAD_BUCKET_PREFIX}/{guest_session_id}/{animation_id}"
        photo_url = save_bytes(data, f"{base_key}.{safe_extension(photo.filename)}", detected_type)

        thumbnail_url = photo_url
        try:
            thumbnail_url = save_bytes(make_thumbnail(data), f"{base_key}_thumb.jpg", 'image/jpeg')
        except ValueError as e:
            print(f"⚠️ Thumbnail skipped for {animation_id}: {e}")

        user = current_user()
        with get_db_connection() as conn:
            animation = create_animation(conn, animation_id, guest_session_id, photo_url, thumbnail_url,
                                         user_id=user['id'] if user else None)
            conn.commit()

        print(f"📤 Upload stored for animation {animation_id} ({detected_type}, {len(data)} bytes)")
        return jsonify({"success": True, "animation": serialize_animation(animation)})

    except Exception as e:
        print(f"ERROR in /api/upload: {e}")
        traceback.print_exc()
        return jsonify({"error": "Internal server error"}), 500


@app.route("/api/status/<animation_id>")
def animation_status(animation_id):
    with get_db_connection() as conn:
        animation = get_animation(conn, animation_id)
    if not animation:
        return jsonify({"error": "Animation not found"}), 404
    return jsonify(serialize_animation(animation))


@app.route("/api/animations")
def api_animations():
    user = current_user()
    guest_session_id = request.args.get('guestSessionId')
    if not user and not is_valid_uuid(guest_session_id or ''):
        return jsonify({"error": "Guest session ID required"}), 400
    with get_db_connection() as conn:
        if user:
            animations = list_animations(conn, user_id=user['id'])
        else:
            animations = list_animations(conn, guest_session_id=guest_session_id)
    return jsonify({"animations": animations})


@app.route("/api/runway/create-job", methods=["POST"])
@limiter.limit(RUNWAY_LIMIT, key_func=global_key)
def runway_create_job():
    data = json_body()
    animation_id = data.get('animationId')
    image_url = data.get('imageUrl')
    if not animation_id or not image_url:
        return jsonify({"error": "Animation ID and image URL required"}), 400

    with get_db_connection() as conn:
        if not get_animation(conn, animation_id):
            return jsonify({"error": "Animation not found"}), 404

    job_id, error = trigger_animation(animation_id, image_url)
    if error == 'Animation is not pending':
        return jsonify({"error": error}), 409
    if error:
        return jsonify({"error": "Failed to create video job"}), 500

    return jsonify({
        "success": True,
        "jobId": job_id,
        "animationId": animation_id,
        "simulated": is_simulated_job(job_id),
    })


@app.route("/api/webhooks/runway", methods=["POST"])
def runway_webhook():
    raw_body = request.get_data()
    signature = request.headers.get('x-runway-signature')

    if config.RUNWAY_WEBHOOK_SECRET and not verify_hmac_signature(raw_body, signature, config.RUNWAY_WEBHOOK_SECRET):
        print("[Runway Webhook] Invalid or missing signature")
        return jsonify({"error": "Invalid signature"}), 401

    try:
        payload = json.loads(raw_body)
    except ValueError:
        return jsonify({"error": "Invalid JSON"}), 400
    if not isinstance(payload, dict):
        return jsonify({"error": "Invalid JSON"}), 400

    runway_job_id = payload.get('id')
    status = payload.get('status')
    print(f"[Runway Webhook] Received: job={runway_job_id} status={status}")

    try:
        with get_db_connection() as conn:
            animation = get_animation_by_runway_job(conn, runway_job_id)
            if not animation:
                return jsonify({"error": "Animation not found"}), 404

            output = payload.get('output') or []
            watermarked_url = None
            if status == 'SUCCEEDED' and output and is_watermarking_enabled():
                watermarked_url = watermark_video(output[0], animation['id'])
            apply_runway_result(conn, animation['id'], status, output, payload.get('failure'), watermarked_url)
        return jsonify({"success": True})
    except Exception as e:
        print(f"[Runway Webhook] Processing failed: {e}")
        traceback.print_exc()
        return jsonify({"error": "Webhook processing failed"}), 500


# --- PAYMENTS ---

@app.route("/api/webhooks/stripe", methods=["POST"])
def stripe_webhook():
    payload = request.get_data()
    signature = request.headers.get('stripe-signature')

    if not signature:
        print("[Stripe Webhook] Missing stripe-signature header")
        return jsonify({"error": "Missing stripe-signature header"}), 400
    if not config.STRIPE_WEBHOOK_SECRET:
        print("[Stripe Webhook] STRIPE_WEBHOOK_SECRET is not configured")
        return jsonify({"error": "Webhook secret not configured"}), 500

    try:
        event = construct_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        print(f"[Stripe Webhook] Signature verification failed: {e}")
        return jsonify({"error": "Invalid signature"}), 400

    event_type = event.get('type')
    obj = (event.get('data') or {}).get('object') or {}
    print(f"[Stripe Webhook] Event: {event_type} ({event.get('id')})")

    try:
        with get_db_connection() as conn:
            if event_type == 'checkout.session.completed':
                result = handle_checkout_completed(conn, obj)
                print(f"[Stripe Webhook] Checkout processed: {result}")
            elif event_type in ('customer.subscription.created', 'customer.subscription.updated',
                                'customer.subscription.deleted'):
                handle_subscription_updated(conn, obj)
            else:
                print(f"[Stripe Webhook] Ignoring event type: {event_type}")
    except Exception as e:
        print(f"[Stripe Webhook] Processing failed: {e}")
        traceback.print_exc()
        return jsonify({"error": "Webhook processing failed"}), 500

    return jsonify({"received": True})


def checkout_customer_for(user, customer_email):
    """Stripe customer for a signed-in buyer, created on first checkout and kept on the profile."""
    if user['stripe_customer_id']:
        return user['stripe_customer_id']
    customer = get_or_create_customer(user['email'] or customer_email, user['id'])
    with get_db_connection() as conn:
        remember_customer(conn, user['id'], customer['id'])
    return customer['id']


@app.route("/api/checkout/create-session", methods=["POST"])
@limiter.limit(CHECKOUT_LIMIT)
def checkout_create_session():
    data = json_body()
    product_type = data.get('productType')
    customer_email = (data.get('customerEmail') or '').strip()
    animation_id = data.get('animationId')
    guest_session_id = data.get('guestSessionId')

    if not product_type or not customer_email or not animation_id:
        return jsonify({"error": "Missing required fields"}), 400
    if product_type not in PRODUCTS:
        return jsonify({"error": "Invalid product type"}), 400
    if not is_valid_email(customer_email):
        return jsonify({"error": "Invalid email address"}), 400

    user = current_user()
    try:
        customer_id = checkout_customer_for(user, customer_email) if user else None
        session = create_checkout_session(
            product_type,
            customer_email,
            animation_id,
            guest_session_id,
            success_url=f"{config.APP_URL}/celebration/{animation_id}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{config.APP_URL}/checkout/{animation_id}",
            user_id=user['id'] if user else None,
            customer_id=customer_id,
        )
    except (BillingError, stripe.StripeError) as e:
        print(f"ERROR creating checkout session: {e}")
        return jsonify({"error": "Failed to create checkout session"}), 500

    if guest_session_id and not user:
        try:
            send_magic_link(customer_email, guest_session_id, animation_id)
        except Exception as e:
            print(f"⚠️ Magic link error: {e}")
            traceback.print_exc()

    return jsonify({"sessionId": session['id'], "url": session.get('url')})


@app.route("/api/checkout/verify", methods=["POST"])
@login_required
def checkout_verify():
    session_id = json_body().get('sessionId')
    if not session_id:
        return jsonify({"error": "Missing session ID"}), 400

    user = current_user()
    print(f"[Verify Checkout] User: {user['id']} {user['email']}")
    try:
        session = retrieve_checkout_session(session_id)
    except stripe.InvalidRequestError:
        return jsonify({"error": "Session not found"}), 404
    except (BillingError, stripe.StripeError) as e:
        print(f"[Verify Checkout] Error: {e}")
        return jsonify({"error": "Failed to verify checkout"}), 500

    try:
        with get_db_connection() as conn:
            result = verify_checkout(conn, session, user['id'])
    except CreditError as e:
        return jsonify({"error": e.message}), e.status_code
    except Exception as e:
        print(f"[Verify Checkout] Error: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to verify checkout"}), 500

    print(f"[Verify Checkout] Final credits: {result['credits']}")
    return jsonify({"success": True, **result})


@app.route("/api/checkout/use-credit", methods=["POST"])
@login_required
def checkout_use_credit():
    animation_id = json_body().get('animationId')
    if not animation_id:
        return jsonify({"error": "Animation ID is required"}), 400

    try:
        with get_db_connection() as conn:
            result = use_credit(conn, current_user()['id'], animation_id)
    except CreditError as e:
        return jsonify({"error": e.message, **e.details}), e.status_code
    except Exception as e:
        print(f"ERROR in /api/checkout/use-credit: {e}")
        traceback.print_exc()
        return jsonify({"error": "Failed to use credit"}), 500
    return jsonify(result)


@app.route("/api/checkout/check-email", methods=["POST"])
def checkout_check_email():
    email = (json_body().get('email') or '').strip()
    if not email:
        return jsonify({"error": "Email is required"}), 400
    if not is_valid_email(email):
        return jsonify({"error": "Invalid email format"}), 400
    with get_db_connection() as conn:
        exists = get_user_by_email(conn, email) is not None
    return jsonify({"exists": exists})


@app.route("/api/account")
@login_required
def account():
    user = current_user()
    with get_db_connection() as conn:
        purchases = conn.execute(
            "SELECT id, animation_id, product_type, amount, credits_granted, credited_at, created_at "
            "FROM purchases WHERE user_id = ? ORDER BY created_at DESC", (user['id'],)
        ).fetchall()
    return jsonify({"profile": serialize_user(user), "purchases": [dict(p) for p in purchases]})


# --- AUTH ---

def _promote_after_login(user, guest_session_id, email_verified):
    if not guest_session_id and not email_verified:
        return
    with get_db_connection() as conn:
        promote_guest_to_user(conn, guest_session_id, user['id'], user['email'], email_verified=email_verified)


@app.route("/api/auth/signup", methods=["POST"])
def auth_signup():
    data = json_body()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    if not is_valid_email(email):
        return jsonify({"error": "Invalid email address"}), 400

    try:
        with get_db_connection() as conn:
            user = create_user(conn, email, password)
    except AuthError as e:
        return jsonify({"error": str(e)}), 400

    login_user(user)
    _promote_after_login(user, data.get('guestSessionId'), email_verified=False)
    return jsonify({"success": True, "user": serialize_user(user)})


@app.route("/api/auth/login", methods=["POST"])
def auth_login():
    data = json_body()
    with get_db_connection() as conn:
        user = authenticate(conn, data.get('email') or '', data.get('password') or '')
    if not user:
        return jsonify({"error": "Invalid email or password"}), 401

    login_user(user)
    _promote_after_login(user, data.get('guestSessionId'), email_verified=bool(user['email_confirmed']))
    with get_db_connection() as conn:
        user = get_user(conn, user['id'])
    return jsonify({"success": True, "user": serialize_user(user)})


@app.route("/api/auth/logout", methods=["POST"])
def auth_logout():
    logout_user()
    return jsonify({"success": True})


@app.route("/api/auth/magic-link", methods=["POST"])
def auth_magic_link():
    data = json_body()
    email = (data.get('email') or '').strip()
    if not is_valid_email(email):
        return jsonify({"error": "Invalid email address"}), 400
    send_magic_link(email, data.get('guestSessionId'), data.get('animationId'))
    return jsonify({"success": True})


@app.route("/api/auth/forgot-password", methods=["POST"])
def auth_forgot_password():
    email = (json_body().get('email') or '').strip()
    if not is_valid_email(email):
        return jsonify({"error": "Invalid email address"}), 400
    with get_db_connection() as conn:
        exists = get_user_by_email(conn, email) is not None
    # Same answer either way so the endpoint can't be used to discover accounts
    if exists:
        send_magic_link(email, purpose='recovery')
    return jsonify({"success": True})


@app.route("/api/auth/reset-password", methods=["POST"])
@login_required
def auth_reset_password():
    try:
        with get_db_connection() as conn:
            set_password(conn, current_user()['id'], json_body().get('password') or '')
    except AuthError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"success": True})


@app.route("/auth/callback")
def auth_callback():
    code = request.args.get('code')
    guest_session_id = request.args.get('guestSessionId')
    animation_id = request.args.get('animationId')
    next_path = safe_next_path(request.args.get('next'))

    if not code:
        return redirect('/')

    try:
        with get_db_connection() as conn:
            login_code = exchange_login_code(conn, code)
            user = get_user(conn, login_code['user_id']) if login_code else None
        if not user:
            print("Auth callback error: invalid or expired code")
            return redirect('/?error=auth_failed')

        login_user(user)
        with get_db_connection() as conn:
            promote_guest_to_user(conn, guest_session_id or login_code['guest_session_id'], user['id'],
                                  user['email'], email_verified=True)
    except Exception as e:
        print(f"Auth callback error: {e}")
        traceback.print_exc()
        return redirect('/?error=auth_failed')

    animation_id = animation_id or login_code['animation_id']
    if animation_id:
        return redirect(f"/celebration/{animation_id}")
    if next_path:
        return redirect(next_path)
    if login_code['purpose'] == 'recovery' or request.args.get('type') == 'recovery':
        return redirect('/auth/reset-password')
    return redirect('/memories')


@app.route("/api/auth/auto-confirm", methods=["POST"])
def auth_auto_confirm():
    if config.PRODUCTION_MODE:
        return jsonify({"error": "Auto-confirm is only available in development"}), 403
    user_id = json_body().get('userId')
    if not user_id:
        return jsonify({"error": "User ID is required"}), 400
    with get_db_connection() as conn:
        if not confirm_email(conn, user_id):
            return jsonify({"error": "User not found"}), 404
        user = get_user(conn, user_id)
    return jsonify({"success": True, "user": serialize_user(user)})


# --- SUPPORT ---

@app.route("/api/help/create-ticket", methods=["POST"])
def help_create_ticket():
    data = json_body()
    email = (data.get('email') or '').strip()
    message = data.get('message') or ''

    if not email or not message:
        return jsonify({"error": "Email and message are required"}), 400
    if not is_valid_email(email):
        return jsonify({"error": "Invalid email address"}), 400
    message = message.strip()
    if not message:
        return jsonify({"error": "Message cannot be empty"}), 400
    if len(message) > MAX_MESSAGE_LENGTH:
        return jsonify({"error": "Message is too long (maximum 5000 characters)"}), 400

    user = current_user()
    try:
        with get_db_connection() as conn:
            ticket = create_ticket(conn, email, message, user['id'] if user else None)
    except TicketError as e:
        print(f"Error creating ticket: {e}")
        return jsonify({"error": "Failed to create ticket"}), 500

    send_in_background(send_new_ticket_notification, ticket_number=ticket['ticket_number'],
                       user_email=email, message_preview=preview(message))
    send_in_background(send_ticket_confirmation, ticket_number=ticket['ticket_number'],
                       user_email=email, user_message=message)
    return jsonify({"success": True, "ticketNumber": ticket['ticket_number']})


@app.route("/api/admin/support/tickets")
@admin_required
def admin_list_tickets():
    try:
        page = max(1, int(request.args.get('page', 1)))
        limit = max(1, min(200, int(request.args.get('limit', 50))))
    except ValueError:
        return jsonify({"error": "Invalid pagination parameters"}), 400

    with get_db_connection() as conn:
        tickets, total = list_tickets(conn, request.args.get('status'), request.args.get('search'), page, limit)
    return jsonify({
        "tickets": [dict(t) for t in tickets],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": (total + limit - 1) // limit,
        },
    })


@app.route("/api/admin/support/tickets/<int:ticket_id>", methods=["GET", "PATCH"])
@admin_required
def admin_ticket(ticket_id):
    with get_db_connection() as conn:
        ticket = get_ticket(conn, ticket_id)
        if not ticket:
            return jsonify({"error": "Ticket not found"}), 404

        if request.method == "GET":
            messages = get_messages(conn, ticket_id)
            return jsonify({"ticket": dict(ticket), "messages": [dict(m) for m in messages]})

        status = json_body().get('status')
        if status and status not in TICKET_STATUSES:
            return jsonify({"error": "Invalid status"}), 400
        if status:
            ticket = update_status(conn, ticket_id, status)
            print(f"🎫 Ticket {ticket['ticket_number']} -> {status}")
    return jsonify({"ticket": dict(ticket)})


@app.route("/api/admin/support/tickets/<int:ticket_id>/reply", methods=["POST"])
@admin_required
def admin_ticket_reply(ticket_id):
    message = (json_body().get('message') or '').strip()
    if not message:
        return jsonify({"error": "Message is required"}), 400
    if len(message) > MAX_MESSAGE_LENGTH:
        return jsonify({"error": "Message is too long (maximum 5000 characters)"}), 400

    admin = current_user()
    with get_db_connection() as conn:
        ticket = get_ticket(conn, ticket_id)
        if not ticket:
            return jsonify({"error": "Ticket not found"}), 404
        reply = add_admin_reply(conn, ticket, admin['email'], message)

    send_in_background(send_admin_reply, ticket_number=ticket['ticket_number'], user_email=ticket['email'],
                       admin_message=message)
    return jsonify({"success": True, "message": row_to_dict(reply)})


if __name__ == '__main__':
    init_db()
    app.run(debug=not config.PRODUCTION_MODE, host='0.0.0.0', port=int(os.getenv('PORT', 5001)))
