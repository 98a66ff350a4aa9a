from flask_wtf import FlaskForm
from wtforms import StringField, SubmitField, TextAreaField
from wtforms.validators import InputRequired, Length, Optional


class ProjectForm(FlaskForm):
    title = StringField("Project title", validators=[InputRequired(), Length(max=150)])
    description = TextAreaField("Short description", validators=[Length(max=500)])
    submit = SubmitField("Create project")


class CharacterProfileForm(FlaskForm):
    name = StringField("Name", validators=[InputRequired(), Length(max=120)])
    role = StringField("Story role", validators=[Optional(), Length(max=120)])
    background = TextAreaField("Background", validators=[Optional()])
    goals = TextAreaField("Goals & desires", validators=[Optional()])
    conflict = TextAreaField("Conflicts & obstacles", validators=[Optional()])
    notes = TextAreaField("Additional notes", validators=[Optional()])
    submit = SubmitField("Save character")
