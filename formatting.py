from models import Book, BookKind, Person, Sequence

SHORT_PEOPLE_LIMIT = 5


def _format_people(title: str, people: tuple[Person, ...], short: bool) -> list[str]:
    if not people:
        return []

    lines = [title]
    shown = people[:SHORT_PEOPLE_LIMIT] if short else people
    lines.extend(f"👤 {person.full_name}" for person in shown)

    if short and len(people) > SHORT_PEOPLE_LIMIT:
        lines.append("  и другие.")

    return lines


def format_book(book: Book, short: bool = False) -> str:
    """
    Book card with a download command per available format.

    Author bibliographies already name the author, so their cards list
    translators instead; every other listing lists authors.
    """
    lines = [f"📖 {book.title} | {book.lang}"]

    if book.annotation_exists:
        lines.append(f"📝 Аннотация: /b_info_{book.id}")

    if book.kind is BookKind.AUTHOR:
        lines.extend(_format_people("Переводчики:", book.translators, short))
    else:
        lines.extend(_format_people("Авторы:", book.authors, short))

    lines.extend(
        f"📥 {file_format}: /d_{file_format}_{book.id}"
        for file_format in book.available_types
    )

    return "\n".join(lines)


def format_book_short(book: Book) -> str:
    return format_book(book, short=True)


def format_author(author: Person) -> str:
    return f"👤 {author.full_name}\n/a_{author.id}"


def format_translator(translator: Person) -> str:
    return f"👤 {translator.full_name}\n/t_{translator.id}"


def format_sequence(sequence: Sequence) -> str:
    return f"📚 {sequence.name}\n/s_{sequence.id}"
