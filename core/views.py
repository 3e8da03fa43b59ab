from django.conf import settings
from django.http import HttpResponse, JsonResponse

HOME_PAGE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8" />
<meta name="viewport" content="width=device-width, initial-scale=1" />
<title>Payflix · Session Payments</title>
<style>
    :root {
        font-family: "Inter", -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif;
        color: #0f172a;
        background: radial-gradient(circle at top, #fef2f2, #ffffff 45%);
    }
    body {
        margin: 0;
        min-height: 100vh;
        display: flex;
        align-items: center;
        justify-content: center;
    }
    .hero {
        width: min(960px, 92vw);
        padding: 3rem 3.5rem;
        border-radius: 32px;
        background: rgba(255, 255, 255, 0.9);
        box-shadow: 0 20px 45px rgba(15, 23, 42, 0.08);
    }
    .cta-row {
        margin-top: 2rem;
        display: flex;
        gap: 1rem;
        flex-wrap: wrap;
    }
    .cta {
        flex: 1 1 240px;
        padding: 1.25rem;
        border-radius: 18px;
        background: #f8fafc;
    }
    code {
        background: rgba(220, 38, 38, 0.08);
        padding: 0.4rem 0.6rem;
        border-radius: 8px;
        display: inline-block;
    }
</style>
</head>
<body>
    <main class="hero">
        <h1>Payflix</h1>
        <p>
            Deposit USDC once, then unlock videos with no further wallet prompts.
            A session key spends from your approved allowance; the facilitator pays network fees.
        </p>
        <div class="cta-row">
            <div class="cta">
                <h2>Deposit</h2>
                <code>POST /api/sessions/create</code>
                <code>POST /api/sessions/confirm</code>
            </div>
            <div class="cta">
                <h2>Unlock</h2>
                <code>POST /api/payments/seamless</code>
            </div>
            <div class="cta">
                <h2>Withdraw</h2>
                <code>POST /api/sessions/withdraw</code>
            </div>
        </div>
    </main>
</body>
</html>"""


def home(request):
    return HttpResponse(HOME_PAGE_HTML, content_type="text/html; charset=utf-8")


def health(request):
    return JsonResponse({"status": "ok", "network": settings.PAYFLIX_SOLANA_NETWORK})
