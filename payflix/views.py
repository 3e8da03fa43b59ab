"""
HTTP surface for sessions, seamless payments and the x402 facilitator.

Views only parse, delegate and shape JSON; all rules live in the ledger, the
orchestrator and the gateway.
"""
from typing import Type, TypeVar

from django.http import Http404
from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework.views import APIView

from payflix.apps import get_services
from payflix.errors import PayflixError, ValidationError
from payflix.schemas import (
    ConfirmSessionRequest,
    CreateSessionRequest,
    FacilitatorRequest,
    RevokeSessionRequest,
    SeamlessPaymentRequest,
    WithdrawRequest,
)

M = TypeVar('M', bound=BaseModel)


def _parse(model: Type[M], data) -> M:
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        logger.debug('pydantic validation failed: {}', exc)
        fields = sorted({str(err['loc'][0]) for err in exc.errors() if err.get('loc')})
        raise ValidationError(
            f"Missing or invalid fields: {', '.join(fields)}" if fields
            else 'Invalid request body.') from exc


def _error_response(exc: PayflixError) -> Response:
    return Response(exc.to_payload(), status=exc.http_status)


class PayflixAPIView(APIView):
    """Maps ``PayflixError`` to its payload and anything else to a 500."""

    authentication_classes: list = []
    permission_classes: list = []

    def handle_exception(self, exc):
        if isinstance(exc, PayflixError):
            if exc.http_status >= 500:
                logger.error('{} failed: {} {}', self.__class__.__name__, exc.code, exc.message)
            else:
                logger.info('{} rejected: {} {}', self.__class__.__name__, exc.code, exc.message)
            return _error_response(exc)
        if isinstance(exc, (APIException, Http404)):
            return super().handle_exception(exc)
        logger.opt(exception=exc).error('{} error: {}', self.__class__.__name__, exc)
        return Response(
            {'error': 'internal_error', 'message': 'Internal server error.'},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )


class CreateSessionView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(CreateSessionRequest, request.data)
        prepared = get_services().ledger.prepare_session(
            body.user_wallet, body.approved_amount, expires_in_hours=body.expires_in)
        data = prepared.to_dict()
        data['success'] = True
        data['message'] = ('Sign the approval to top up your session.' if prepared.is_top_up
                           else 'Sign the approval to start your session.')
        return Response(data, status=status.HTTP_200_OK)


class ConfirmSessionView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(ConfirmSessionRequest, request.data)
        session = get_services().ledger.confirm_session(
            body.session_id,
            signed_transaction=body.approval_transaction,
            signature=body.transaction_signature,
        )
        return Response(
            {
                'success': True,
                'session': session.to_dict(),
                'message': 'Session activated! You can now make seamless payments.',
            },
            status=status.HTTP_200_OK,
        )


class ActiveSessionView(PayflixAPIView):
    def get(self, request, *args, **kwargs):
        user_wallet = request.query_params.get('userWallet', '')
        if not user_wallet:
            raise ValidationError('userWallet is required.')
        session = get_services().ledger.get_active_session(user_wallet)
        return Response(
            {'session': session.to_dict() if session else None},
            status=status.HTTP_200_OK,
        )


class SessionBalanceView(PayflixAPIView):
    def get(self, request, *args, **kwargs):
        user_wallet = request.query_params.get('userWallet', '')
        if not user_wallet:
            raise ValidationError('userWallet is required.')
        return Response(get_services().ledger.get_session_balance(user_wallet),
                        status=status.HTTP_200_OK)


class WithdrawView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(WithdrawRequest, request.data)
        result = get_services().ledger.withdraw(body.user_wallet, body.amount)
        data = result.to_dict()
        data['success'] = True
        return Response(data, status=status.HTTP_200_OK)


class RevokeSessionView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(RevokeSessionRequest, request.data)
        get_services().ledger.revoke_session(body.session_id, body.user_wallet)
        return Response({'success': True, 'message': 'Session revoked.'},
                        status=status.HTTP_200_OK)


class SeamlessPaymentView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        body = _parse(SeamlessPaymentRequest, request.data)
        result = get_services().orchestrator.unlock_video(body.video_id, body.user_wallet)
        return Response(result.to_dict(), status=status.HTTP_200_OK)


class X402SupportedView(PayflixAPIView):
    """
    List supported payment kinds.

    Mirrors the facilitator ``/supported`` shape:
    { "kinds": [ { "x402Version": 1, "scheme": "exact", "network": "solana-devnet" } ] }
    """

    def get(self, request, *args, **kwargs):
        return Response({'kinds': get_services().gateway.supported()},
                        status=status.HTTP_200_OK)


class X402VerifyView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        try:
            body = _parse(FacilitatorRequest, request.data)
        except ValidationError as exc:
            logger.info('x402 verification failed: {}', exc.message)
            return Response({'isValid': False, 'invalidReason': exc.message, 'payer': None},
                            status=status.HTTP_200_OK)

        result = get_services().gateway.verify(body.payment_payload, body.payment_requirements)
        if not result.is_valid:
            logger.info('x402 verification failed: {}', result.invalid_reason)
        return Response(result.to_dict(), status=status.HTTP_200_OK)


class X402SettleView(PayflixAPIView):
    def post(self, request, *args, **kwargs):
        try:
            body = _parse(FacilitatorRequest, request.data)
        except ValidationError as exc:
            logger.info('x402 settlement validation failed: {}', exc.message)
            return Response({'success': False, 'errorReason': exc.message, 'transaction': None},
                            status=status.HTTP_200_OK)

        result = get_services().gateway.settle(body.payment_payload, body.payment_requirements)
        return Response(result.to_dict(), status=status.HTTP_200_OK)
