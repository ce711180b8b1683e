from pydantic import BaseModel, EmailStr, Field, model_validator

class MagicLinkRequest(BaseModel):
    email: EmailStr

class MagicLinkRequestResponse(BaseModel):
    # Same body whether or not the email is known.
    message: str = "If an account exists for that email, a sign-in link has been sent."

class MagicLinkVerifyRequest(BaseModel):
    token: str = Field(..., min_length=1)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    patient_id: str
    needs_password_setup: bool = False

class SetupPasswordRequest(BaseModel):
    password: str
    confirm_password: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.confirm_password:
            raise ValueError("Passwords don't match")
        return self

class SetupPasswordResponse(BaseModel):
    success: bool = True
