from flask_wtf import FlaskForm
from wtforms import BooleanField, PasswordField, StringField, SubmitField
from wtforms.validators import Email, EqualTo, InputRequired, Length, ValidationError

from ..models import User


def _normalize_email(value):
    return value.strip().lower() if isinstance(value, str) else value


class RegistrationForm(FlaskForm):
    display_name = StringField("Pen name", validators=[InputRequired(), Length(max=120)])
    email = StringField(
        "Email",
        validators=[InputRequired(), Email(), Length(max=255)],
        filters=[_normalize_email],
    )
    password = PasswordField("Password", validators=[InputRequired(), Length(min=8, max=128)])
    confirm_password = PasswordField(
        "Confirm password",
        validators=[InputRequired(), EqualTo("password", message="Passwords must match.")],
    )
    submit = SubmitField("Create account")

    def validate_email(self, field: StringField) -> None:
        if User.query.filter_by(email=field.data).first():
            raise ValidationError("An account with that email already exists.")


class LoginForm(FlaskForm):
    email = StringField(
        "Email",
        validators=[InputRequired(), Email(), Length(max=255)],
        filters=[_normalize_email],
    )
    password = PasswordField("Password", validators=[InputRequired()])
    remember = BooleanField("Keep me signed in")
    submit = SubmitField("Sign in")
