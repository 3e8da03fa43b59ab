from django.urls import path

from payflix.views import (
    ActiveSessionView,
    ConfirmSessionView,
    CreateSessionView,
    RevokeSessionView,
    SeamlessPaymentView,
    SessionBalanceView,
    WithdrawView,
    X402SettleView,
    X402SupportedView,
    X402VerifyView,
)

app_name = 'payflix'

urlpatterns = [
    path('sessions/create', CreateSessionView.as_view(), name='session-create'),
    path('sessions/confirm', ConfirmSessionView.as_view(), name='session-confirm'),
    path('sessions/active', ActiveSessionView.as_view(), name='session-active'),
    path('sessions/balance', SessionBalanceView.as_view(), name='session-balance'),
    path('sessions/withdraw', WithdrawView.as_view(), name='session-withdraw'),
    path('sessions/revoke', RevokeSessionView.as_view(), name='session-revoke'),
    path('payments/seamless', SeamlessPaymentView.as_view(), name='payment-seamless'),
    path('facilitator/supported', X402SupportedView.as_view(), name='x402-supported'),
    path('facilitator/verify', X402VerifyView.as_view(), name='x402-verify'),
    path('facilitator/settle', X402SettleView.as_view(), name='x402-settle'),
]
