# Client-side permission predicates
from typing import Optional
from smartclass.schemas.academics_schemas import ClassInstance, UserProfile, UserType
from smartclass.utils.errors import PermissionDenied


def can_manage_class(user: Optional[UserProfile], class_data: Optional[ClassInstance]) -> bool:
    """Admins, or the teacher assigned to the class"""
    if user is None:
        return False
    if user.user_type == UserType.ADMIN:
        return True
    return (
        user.user_type == UserType.TEACHER
        and class_data is not None
        and user.teacher_profile is not None
        and class_data.teacher == user.teacher_profile.id
    )


def can_view_class(user: Optional[UserProfile], class_data: Optional[ClassInstance]) -> bool:
    """Managers, or a student enrolled in the class"""
    if can_manage_class(user, class_data):
        return True
    if user is None or class_data is None:
        return False
    if user.user_type != UserType.STUDENT or user.student_profile is None:
        return False
    student_id = user.student_profile.id
    return student_id in class_data.students or any(s.id == student_id for s in class_data.students_detail)


def require_manage(user: Optional[UserProfile], class_data: Optional[ClassInstance], action: str = "manage this class"):
    """Ensure the current user may write to the class"""
    if not can_manage_class(user, class_data):
        raise PermissionDenied(f"You do not have permission to {action}")
    return user


def require_view(user: Optional[UserProfile], class_data: Optional[ClassInstance]):
    """Ensure the current user may see the class"""
    if not can_view_class(user, class_data):
        raise PermissionDenied("You do not have permission to view this class")
    return user
