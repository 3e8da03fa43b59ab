from django.contrib import admin

from payflix.models import Payment, SpendingSession, Video, WalletUser, X402Authorization


@admin.register(SpendingSession)
class SpendingSessionAdmin(admin.ModelAdmin):
    list_display = ('id', 'user_wallet', 'status', 'approved_amount', 'spent_amount',
                    'remaining_amount', 'expires_at', 'created_at')
    list_filter = ('status',)
    search_fields = ('user_wallet', 'delegate_public_key', 'approval_signature')
    exclude = ('delegate_key_encrypted',)
    readonly_fields = ('approved_units', 'spent_units', 'remaining_units', 'approval_signature')


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ('id', 'video', 'user_wallet', 'amount', 'creator_amount',
                    'platform_amount', 'status', 'verified_at')
    list_filter = ('status',)
    search_fields = ('user_wallet', 'creator_wallet', 'transaction_signature')


@admin.register(X402Authorization)
class X402AuthorizationAdmin(admin.ModelAdmin):
    list_display = ('nonce', 'payer', 'pay_to', 'amount_units', 'network', 'status', 'settled_at')
    list_filter = ('status', 'network')
    search_fields = ('nonce', 'payer', 'transaction_signature')


admin.site.register(WalletUser)
admin.site.register(Video)
