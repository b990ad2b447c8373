from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# -------------------------
# Health advice
# -------------------------
class WhoopMetrics(BaseModel):
    recovery_score: Optional[float] = Field(default=None, ge=0, le=100)
    sleep_performance: Optional[float] = Field(default=None, ge=0, le=100)
    hrv_now_ms: Optional[float] = Field(default=None, gt=0)
    hrv_baseline_ms: Optional[float] = Field(default=None, gt=0)
    rhr_now_bpm: Optional[float] = Field(default=None, gt=0)
    rhr_baseline_bpm: Optional[float] = Field(default=None, gt=0)
    yesterday_strain: Optional[float] = Field(default=None, ge=0, le=21)


class UserProfile(BaseModel):
    experience_level: Literal["beginner", "intermediate", "advanced"] = "intermediate"
    min_increment_kg: Optional[float] = Field(default=None, gt=0)


class PlannedSet(BaseModel):
    set_id: str
    target_reps: Optional[int] = Field(default=None, gt=0)
    target_weight_kg: Optional[float] = Field(default=None, gt=0)
    target_rpe: Optional[float] = Field(default=None, ge=1, le=10)


class PlannedExercise(BaseModel):
    exercise_id: str
    name: Optional[str] = None
    tags: List[Literal["strength", "hypertrophy", "endurance"]] = Field(default_factory=list)
    sets: List[PlannedSet] = Field(default_factory=list)


class WorkoutPlan(BaseModel):
    exercises: List[PlannedExercise] = Field(default_factory=list)


class HistorySet(BaseModel):
    weight: Optional[float] = None
    reps: Optional[int] = None
    volume: Optional[float] = None


class HistorySession(BaseModel):
    workout_date: Optional[str] = None
    sets: List[HistorySet] = Field(default_factory=list)


class ExerciseHistory(BaseModel):
    exercise_name: str
    sessions: List[HistorySession] = Field(default_factory=list)


class HealthAdviceRequest(BaseModel):
    session_id: str
    user_profile: UserProfile = Field(default_factory=UserProfile)
    whoop: Optional[WhoopMetrics] = None
    workout_plan: WorkoutPlan = Field(default_factory=WorkoutPlan)
    prior_bests: Dict[str, Dict[str, Optional[float]]] = Field(default_factory=dict)
    history: List[ExerciseHistory] = Field(default_factory=list)
    progression_type: Literal["adaptive", "linear", "percentage"] = "adaptive"
    linear_increment: Optional[float] = Field(default=None, gt=0)
    percentage_increment: Optional[float] = Field(default=None, gt=0)


# -------------------------
# Workout saves (offline queue replay target)
# -------------------------
class SetEntry(BaseModel):
    id: str
    weight: Optional[float] = Field(default=None, ge=0)
    reps: Optional[int] = Field(default=None, ge=0)
    sets: Optional[int] = Field(default=None, ge=0)
    unit: Literal["kg", "lbs"] = "kg"


class ExerciseEntry(BaseModel):
    exercise_name: str = Field(min_length=1)
    template_exercise_id: Optional[int] = None
    unit: Literal["kg", "lbs"] = "kg"
    sets: List[SetEntry] = Field(default_factory=list)


class SaveWorkoutPayload(BaseModel):
    session_id: int
    exercises: List[ExerciseEntry] = Field(default_factory=list)


class BatchSaveRequest(BaseModel):
    workouts: List[SaveWorkoutPayload] = Field(min_length=1, max_length=50)
