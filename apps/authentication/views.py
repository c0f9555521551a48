import logging

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.exceptions import TokenError
from rest_framework_simplejwt.tokens import RefreshToken
from django.contrib.auth import authenticate

logger = logging.getLogger(__name__)


def serialize_user(user) -> dict:
    """Ambient user context handed to clients: id, display name and role"""
    return {
        "id": str(user.id),
        "username": user.username,
        "name": user.display_name,
        "role": user.role,
        "sound_notifications": user.sound_notifications,
    }


@api_view(["POST"])
@permission_classes([AllowAny])
def login_view(request):
    """
    Login endpoint for JWT authentication
    returns: JWT refresh and access tokens
    """
    username = (request.data.get("username") or "").strip()
    password = request.data.get("password")

    if not username or not password:
        return Response({"error": "Username and password are required"}, status=status.HTTP_400_BAD_REQUEST)

    user = authenticate(request, username=username, password=password)

    if not user:
        logger.warning(f"Failed login for {username}")
        return Response({"error": "Invalid username or password"}, status=status.HTTP_401_UNAUTHORIZED)

    refresh = RefreshToken.for_user(user)
    logger.info(f"User {user.username} logged in as {user.role}")
    return Response(
        {
            "access": str(refresh.access_token),
            "refresh": str(refresh),
            "user": serialize_user(user),
        }
    )


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def logout_view(request):
    refresh_token = request.data.get("refresh") or request.COOKIES.get("refresh_token")

    if refresh_token is None:
        return Response({"error": "No refresh token provided."}, status=status.HTTP_400_BAD_REQUEST)

    try:
        token = RefreshToken(refresh_token)
        token.blacklist()

    except TokenError as e:
        return Response({"error": str(e)}, status=status.HTTP_400_BAD_REQUEST)

    response = Response(status=204)
    response.delete_cookie("refresh_token")

    return response


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def me_view(request):
    return Response(serialize_user(request.user))
